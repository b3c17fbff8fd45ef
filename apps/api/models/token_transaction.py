"""TokenTransaction model: append-only ledger of balance changes."""

from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_PURCHASE = "purchase"
TRANSACTION_ADMIN_GRANT = "admin_grant"
TRANSACTION_REFUND = "refund"
TRANSACTION_DEDUCTION = "deduction"
TRANSACTION_BALANCE_ADJUSTMENT = "balance_adjustment"
TRANSACTION_TYPES = (
    TRANSACTION_PURCHASE,
    TRANSACTION_ADMIN_GRANT,
    TRANSACTION_REFUND,
    TRANSACTION_DEDUCTION,
    TRANSACTION_BALANCE_ADJUSTMENT,
)

REFERENCE_MODULE_ACTIVATION = "module_activation"
REFERENCE_MODULE_DEACTIVATION = "module_deactivation"
REFERENCE_PURCHASE = "purchase"
REFERENCE_ADMIN = "admin"


class TokenTransaction(Base):
    """Immutable ledger entry; balance_after == balance_before + amount."""

    __tablename__ = "token_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(String(50), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    balance_before = Column(Numeric(10, 2), nullable=False)
    balance_after = Column(Numeric(10, 2), nullable=False)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    voucher_id = Column(Integer, ForeignKey("voucher_codes.id", ondelete="SET NULL"), nullable=True)
    voucher_discount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    description = Column(Text, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_token_transactions_user_created", "user_id", "created_at"),
    )

    user = relationship("User", back_populates="token_transactions", foreign_keys=[user_id])
