"""LedgerEntry model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


KIND_USAGE = "usage"
KIND_ADMIN_ADJUSTMENT = "admin_adjustment"
KIND_SUBSCRIPTION_BONUS = "subscription_bonus"
KIND_PURCHASE = "purchase"
KIND_SIGNUP_GRANT = "signup_grant"
LEDGER_KINDS = (
    KIND_USAGE,
    KIND_ADMIN_ADJUSTMENT,
    KIND_SUBSCRIPTION_BONUS,
    KIND_PURCHASE,
    KIND_SIGNUP_GRANT,
)


class LedgerEntry(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_entries_account_idempotency_key"),
        UniqueConstraint("account_id", "period_key", name="uq_ledger_entries_account_period_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    balance_after = Column(Integer, nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    period_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="ledger_entries")
