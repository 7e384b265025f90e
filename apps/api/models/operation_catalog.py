"""Catalog of billable operation types and their credit costs."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CatalogOperation(Base):
    """Configured operation type (one row per AI model offering)."""

    __tablename__ = "operation_catalog"

    operation_type = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    credit_cost = Column(Integer, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
