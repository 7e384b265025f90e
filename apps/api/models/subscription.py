"""Subscription state mirrored from the billing provider."""

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELED = "canceled"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_UNPAID = "unpaid"


class SubscriptionState(Base):
    """Latest known provider snapshot for one external subscription."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    external_subscription_id = Column(String, nullable=False, unique=True, index=True)
    plan_id = Column(String, nullable=True)
    status = Column(String, nullable=False)  # active, canceled, past_due, unpaid
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="subscriptions")
