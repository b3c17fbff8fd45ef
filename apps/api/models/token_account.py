"""TokenAccount model: one mutable balance row per user."""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TokenAccount(Base):
    """Current and lifetime-purchased token balance for a user."""

    __tablename__ = "user_token_account"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    balance = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_purchased = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_token_account_balance_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="token_account")
