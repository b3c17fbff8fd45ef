"""ModuleActivation model: time-bounded grant of a premium module."""

from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ModuleActivation(Base):
    """One rental period of a module; kept for history after it ends."""

    __tablename__ = "module_activations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    module_key = Column(
        String(50),
        ForeignKey("modules.module_key", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    activated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    activation_order = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    token_used = Column(Numeric(10, 2), nullable=False, default=Decimal("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_module_activations_user_active_expires", "user_id", "is_active", "expires_at"),
        Index("ix_module_activations_user_module_expires", "user_id", "module_key", "expires_at"),
        Index(
            "uq_module_activations_user_module_active",
            "user_id",
            "module_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    user = relationship("User", back_populates="module_activations")
