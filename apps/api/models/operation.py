"""Operation model for billable image operations."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class Operation(Base):
    """One billable unit of work requested by an account."""

    __tablename__ = "operations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    operation_type = Column(String, nullable=False, index=True)
    credit_cost = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)  # pending, completed, failed
    input_ref = Column(String, nullable=True)  # original image URL or prompt
    result_ref = Column(String, nullable=True)
    ledger_entry_id = Column(String, ForeignKey("ledger_entries.id"), nullable=True)
    reservation_entry_id = Column(String, ForeignKey("ledger_entries.id"), nullable=True)
    error_message = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="operations")
