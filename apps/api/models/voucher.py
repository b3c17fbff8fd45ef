"""Voucher code and redemption models."""

from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.sql import func

from database import Base


class VoucherCode(Base):
    """Discount code redeemable against token purchases."""

    __tablename__ = "voucher_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(String(255), nullable=True)
    discount_percentage = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    minimum_purchase = Column(Numeric(10, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_voucher_codes_active_valid_until", "is_active", "valid_until"),
    )


class VoucherUsage(Base):
    """Append-only record of one successful voucher redemption."""

    __tablename__ = "voucher_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    voucher_id = Column(Integer, ForeignKey("voucher_codes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    tokens_purchased = Column(Integer, nullable=False)
    original_price = Column(Numeric(10, 2), nullable=False)
    discount_applied = Column(Numeric(10, 2), nullable=False)
    final_price = Column(Numeric(10, 2), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_voucher_usages_voucher_user", "voucher_id", "user_id"),
    )
