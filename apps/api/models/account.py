"""Account model."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


ROLE_USER = "user"
ROLE_ADMIN = "admin"
ACCOUNT_ROLES = (ROLE_USER, ROLE_ADMIN)


class Account(Base):
    """Authenticated account with its materialized credit balance."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    # Cache of sum(ledger_entries.amount); written only by services.ledger.mutate.
    credits = Column(Integer, nullable=False, default=0)
    role = Column(String, nullable=False, default=ROLE_USER)  # user, admin
    suspended = Column(Boolean, nullable=False, default=False)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspended_reason = Column(String, nullable=True)
    billing_customer_ref = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    ledger_entries = relationship("LedgerEntry", back_populates="account")
    operations = relationship("Operation", back_populates="account")
    subscriptions = relationship("SubscriptionState", back_populates="account")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
