"""Dedupe record for processed billing provider events."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class BillingEventRecord(Base):
    """Marks a provider event id as already reconciled."""

    __tablename__ = "billing_events"

    external_event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    account_id = Column(String, nullable=True, index=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
