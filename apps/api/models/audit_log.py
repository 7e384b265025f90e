"""Append-only administrative audit log."""

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func
import uuid

from database import Base


class AuditLogEntry(Base):
    """Record of one privileged action."""

    __tablename__ = "audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # No foreign keys: audit rows must outlive anything they reference.
    admin_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    target_account_id = Column(String, nullable=False, index=True)
    details_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
