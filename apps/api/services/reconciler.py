"""Billing event reconciler.

Applies billing provider events to subscription state and the credit ledger.
Delivery is at-least-once and unordered, so every effect is either an upsert
keyed by the provider's immutable subscription id or a ledger mutation keyed
by the provider's event id (plus the billing cycle, so the subscription
snapshot and the renewal invoice for the same cycle grant only once).
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import plan_credit_bonus
from models.account import Account
from models.billing_event import BillingEventRecord
from models.ledger_entry import KIND_SUBSCRIPTION_BONUS
from models.subscription import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_CANCELED, SubscriptionState
from services.billing_events import (
    BillingEvent,
    InvoicePaymentSucceededEvent,
    SubscriptionDeletedEvent,
    SubscriptionObject,
    SubscriptionUpsertEvent,
    UnhandledEvent,
)
from services.errors import Conflict
from services.ledger import STORE_ERRORS, mutate, rollback_session, translate_store_error

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_DUPLICATE = "duplicate"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def billing_period_key(external_subscription_id: str, period_start: Optional[datetime]) -> Optional[str]:
    """Stable key for one billing cycle of one subscription."""
    start = _as_utc(period_start)
    if start is None:
        return None
    return f"{external_subscription_id}:{int(start.timestamp())}"


def _outcome(status: str, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": status}
    payload.update(fields)
    return payload


async def _already_processed(event_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(BillingEventRecord.external_event_id).where(BillingEventRecord.external_event_id == event_id)
    )
    return result.scalar_one_or_none() is not None


async def _record_event(event: BillingEvent, outcome: Dict[str, Any], db: AsyncSession) -> None:
    db.add(
        BillingEventRecord(
            external_event_id=event.id,
            event_type=event.type,
            outcome=str(outcome.get("status")),
            account_id=outcome.get("account_id"),
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first.
        await db.rollback()


async def _resolve_account(subscription: SubscriptionObject, db: AsyncSession) -> Optional[Account]:
    if subscription.customer:
        result = await db.execute(select(Account).where(Account.billing_customer_ref == subscription.customer))
        account = result.scalar_one_or_none()
        if account is not None:
            return account

    hint = subscription.account_hint
    if not hint:
        return None
    result = await db.execute(select(Account).where(Account.id == hint))
    account = result.scalar_one_or_none()
    if account is not None and subscription.customer and not account.billing_customer_ref:
        account.billing_customer_ref = subscription.customer
    return account


async def _get_subscription(external_subscription_id: str, db: AsyncSession) -> Optional[SubscriptionState]:
    result = await db.execute(
        select(SubscriptionState).where(SubscriptionState.external_subscription_id == external_subscription_id)
    )
    return result.scalar_one_or_none()


def _is_stale(state: SubscriptionState, snapshot: SubscriptionObject) -> bool:
    stored_end = _as_utc(state.current_period_end)
    incoming_end = _as_utc(snapshot.current_period_end)
    if stored_end is None or incoming_end is None:
        return False
    return incoming_end < stored_end


async def _commit_subscription(db: AsyncSession, external_subscription_id: str) -> None:
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict(
            f"Subscription {external_subscription_id} was written concurrently. Retry delivery.",
            external_subscription_id=external_subscription_id,
        ) from exc


async def _grant_plan_bonus(
    *,
    account_id: str,
    event: BillingEvent,
    external_subscription_id: str,
    plan_id: str,
    period_start: Optional[datetime],
    description: str,
    db: AsyncSession,
) -> Optional[str]:
    bonus = plan_credit_bonus(plan_id)
    if bonus <= 0:
        logger.info("Plan %s carries no credit bonus; nothing granted for %s", plan_id, event.id)
        return None
    entry = await mutate(
        account_id,
        bonus,
        KIND_SUBSCRIPTION_BONUS,
        f"{description}: {bonus} credits",
        db,
        idempotency_key=event.id,
        reference_type="subscription",
        reference_id=external_subscription_id,
        period_key=billing_period_key(external_subscription_id, period_start),
    )
    return entry.id


async def _handle_subscription_upsert(event: SubscriptionUpsertEvent, db: AsyncSession) -> Dict[str, Any]:
    snapshot = event.data.object
    account = await _resolve_account(snapshot, db)
    if account is None:
        logger.warning(
            "No account for subscription %s (customer=%s); acknowledging %s",
            snapshot.id,
            snapshot.customer,
            event.id,
        )
        return _outcome(OUTCOME_UNMATCHED)

    state = await _get_subscription(snapshot.id, db)
    applied = True
    if state is None:
        state = SubscriptionState(
            account_id=account.id,
            external_subscription_id=snapshot.id,
            plan_id=snapshot.plan_id,
            status=snapshot.status,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            canceled_at=snapshot.canceled_at if snapshot.status == SUBSCRIPTION_CANCELED else None,
        )
        db.add(state)
    elif state.status == SUBSCRIPTION_CANCELED:
        applied = False
        logger.info("Subscription %s is canceled; ignoring snapshot %s", snapshot.id, event.id)
    elif _is_stale(state, snapshot):
        applied = False
        logger.info("Ignoring stale snapshot %s for subscription %s", event.id, snapshot.id)
    else:
        state.plan_id = snapshot.plan_id or state.plan_id
        state.status = snapshot.status
        state.current_period_start = snapshot.current_period_start
        state.current_period_end = snapshot.current_period_end
        if snapshot.status == SUBSCRIPTION_CANCELED:
            state.canceled_at = snapshot.canceled_at or datetime.now(timezone.utc)
    await _commit_subscription(db, snapshot.id)

    # The grant follows the snapshot itself, not the stored row: a late
    # snapshot for an older cycle still pays out that cycle exactly once.
    ledger_entry_id = None
    if snapshot.status == SUBSCRIPTION_ACTIVE:
        ledger_entry_id = await _grant_plan_bonus(
            account_id=account.id,
            event=event,
            external_subscription_id=snapshot.id,
            plan_id=snapshot.plan_id,
            period_start=snapshot.current_period_start,
            description="Subscription bonus",
            db=db,
        )

    return _outcome(
        OUTCOME_PROCESSED,
        account_id=account.id,
        subscription_status=snapshot.status if applied else state.status,
        snapshot_applied=applied,
        ledger_entry_id=ledger_entry_id,
    )


async def _handle_subscription_deleted(event: SubscriptionDeletedEvent, db: AsyncSession) -> Dict[str, Any]:
    snapshot = event.data.object
    state = await _get_subscription(snapshot.id, db)
    if state is None:
        account = await _resolve_account(snapshot, db)
        if account is None:
            logger.warning("No account for deleted subscription %s; acknowledging %s", snapshot.id, event.id)
            return _outcome(OUTCOME_UNMATCHED)
        # Tombstone so a late created/updated snapshot cannot revive it.
        state = SubscriptionState(
            account_id=account.id,
            external_subscription_id=snapshot.id,
            plan_id=snapshot.plan_id,
            status=SUBSCRIPTION_CANCELED,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
        )
        db.add(state)

    state.status = SUBSCRIPTION_CANCELED
    state.canceled_at = snapshot.canceled_at or datetime.now(timezone.utc)
    account_id = state.account_id
    await _commit_subscription(db, snapshot.id)
    return _outcome(OUTCOME_PROCESSED, account_id=account_id, subscription_status=SUBSCRIPTION_CANCELED)


async def _handle_invoice_payment_succeeded(
    event: InvoicePaymentSucceededEvent,
    db: AsyncSession,
) -> Dict[str, Any]:
    invoice = event.data.object
    if not invoice.is_renewal:
        return _outcome(OUTCOME_IGNORED, reason=f"billing_reason={invoice.billing_reason}")
    if not invoice.subscription:
        logger.warning("Renewal invoice %s has no subscription; acknowledging %s", invoice.id, event.id)
        return _outcome(OUTCOME_UNMATCHED)

    state = await _get_subscription(invoice.subscription, db)
    if state is None:
        logger.warning(
            "Renewal invoice %s references unknown subscription %s; acknowledging %s",
            invoice.id,
            invoice.subscription,
            event.id,
        )
        return _outcome(OUTCOME_UNMATCHED)

    account_id = state.account_id
    ledger_entry_id = await _grant_plan_bonus(
        account_id=account_id,
        event=event,
        external_subscription_id=invoice.subscription,
        plan_id=state.plan_id or "",
        period_start=invoice.period_start,
        description="Subscription renewal",
        db=db,
    )
    return _outcome(OUTCOME_PROCESSED, account_id=account_id, ledger_entry_id=ledger_entry_id)


async def reconcile_billing_event(event: BillingEvent, db: AsyncSession) -> Dict[str, Any]:
    """Apply one billing event; safe under duplicate and out-of-order delivery.

    Store failures outside the ledger mutation roll the session back and
    surface as ``StoreUnavailable`` or ``Conflict`` so the provider redelivers.
    """
    try:
        return await _reconcile(event, db)
    except STORE_ERRORS as exc:
        await rollback_session(db)
        error = translate_store_error(exc)
        logger.error("Billing event %s (%s) failed: %s", event.id, event.type, error.code)
        raise error from exc


async def _reconcile(event: BillingEvent, db: AsyncSession) -> Dict[str, Any]:
    if isinstance(event, UnhandledEvent):
        logger.info("Ignoring unhandled billing event type %s (%s)", event.type, event.id)
        return _outcome(OUTCOME_IGNORED)

    if await _already_processed(event.id, db):
        logger.info("Skipping duplicate billing event %s (%s)", event.id, event.type)
        return _outcome(OUTCOME_DUPLICATE)

    if isinstance(event, SubscriptionUpsertEvent):
        outcome = await _handle_subscription_upsert(event, db)
    elif isinstance(event, SubscriptionDeletedEvent):
        outcome = await _handle_subscription_deleted(event, db)
    else:
        outcome = await _handle_invoice_payment_succeeded(event, db)

    if outcome["status"] != OUTCOME_UNMATCHED:
        # Unmatched events stay unrecorded so a later replay can still apply them.
        await _record_event(event, outcome, db)
    logger.info("Reconciled billing event %s (%s): %s", event.id, event.type, outcome["status"])
    return outcome


async def get_subscription_summary(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(SubscriptionState)
        .where(SubscriptionState.account_id == account_id)
        .order_by(SubscriptionState.current_period_end.desc())
    )
    states = result.scalars().all()
    active = next((state for state in states if state.status == SUBSCRIPTION_ACTIVE), None)
    return {
        "active": active is not None,
        "subscriptions": [
            {
                "external_subscription_id": state.external_subscription_id,
                "plan_id": state.plan_id,
                "status": state.status,
                "monthly_credit_bonus": plan_credit_bonus(state.plan_id or ""),
                "current_period_start": state.current_period_start.isoformat() if state.current_period_start else None,
                "current_period_end": state.current_period_end.isoformat() if state.current_period_end else None,
            }
            for state in states
        ],
    }
