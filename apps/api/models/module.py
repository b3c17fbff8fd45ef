"""Module registry model."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


MODULE_CATEGORY_FREE = "free"
MODULE_CATEGORY_PREMIUM = "premium"
MODULE_CATEGORIES = (MODULE_CATEGORY_FREE, MODULE_CATEGORY_PREMIUM)


class Module(Base):
    """Purchasable feature module. Rows are deactivated, never deleted."""

    __tablename__ = "modules"

    module_key = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default=MODULE_CATEGORY_PREMIUM)
    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_free(self) -> bool:
        return self.category == MODULE_CATEGORY_FREE
