"""User model."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class User(Base):
    """Identity row owned by the surrounding application."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    token_account = relationship(
        "TokenAccount",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    token_transactions = relationship(
        "TokenTransaction",
        back_populates="user",
        foreign_keys="TokenTransaction.user_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    module_activations = relationship(
        "ModuleActivation",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
