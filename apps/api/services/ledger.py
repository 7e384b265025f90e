"""Credit ledger store and the single balance mutation primitive.

Every balance change (usage debits, subscription grants, purchases and admin
adjustments) goes through :func:`mutate`. The balance cached on
``accounts.credits`` is only ever written by one conditional ``UPDATE`` inside
the same transaction that appends the matching ``ledger_entries`` row, so the
cache always equals ``sum(ledger_entries.amount)`` and concurrent debits for
one account serialize on the account row instead of racing a
read-modify-write.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.ledger_entry import LEDGER_KINDS, LedgerEntry
from services.catalog import list_catalog
from services.errors import Conflict, InsufficientCredits, LedgerError, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

BeforeCommitHook = Callable[[LedgerEntry], Awaitable[None]]

_CONTENTION_MARKERS = (
    "database is locked",
    "deadlock",
    "could not serialize",
    "serialization failure",
    "lock timeout",
    "lock not available",
)
STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def translate_store_error(exc: BaseException) -> LedgerError:
    """Map a driver/pool failure to ``Conflict`` (contention) or ``StoreUnavailable``."""
    message = str(getattr(exc, "orig", None) or exc).lower()
    if any(marker in message for marker in _CONTENTION_MARKERS):
        return Conflict("Concurrent ledger mutation detected. Retry the request.")
    return StoreUnavailable("Ledger store is unavailable.")


async def rollback_session(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("Ledger rollback failed: %s", exc)


async def get_account(account_id: str, db: AsyncSession) -> Account:
    try:
        result = await db.execute(select(Account).where(Account.id == account_id))
    except STORE_ERRORS as exc:
        raise translate_store_error(exc) from exc
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFound(f"Account {account_id} not found.", account_id=account_id)
    return account


async def get_balance(account_id: str, db: AsyncSession) -> int:
    try:
        result = await db.execute(select(Account.credits).where(Account.id == account_id))
    except STORE_ERRORS as exc:
        raise translate_store_error(exc) from exc
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFound(f"Account {account_id} not found.", account_id=account_id)
    return int(balance)


async def _find_existing_entry(
    db: AsyncSession,
    account_id: str,
    *,
    idempotency_key: Optional[str] = None,
    period_key: Optional[str] = None,
) -> Optional[LedgerEntry]:
    if idempotency_key:
        result = await db.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.idempotency_key == idempotency_key,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is not None:
            return entry
    if period_key:
        result = await db.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.period_key == period_key,
            )
        )
        return result.scalar_one_or_none()
    return None


async def _apply_balance_delta(db: AsyncSession, account_id: str, amount: int) -> int:
    stmt = update(Account).where(Account.id == account_id)
    if amount < 0:
        stmt = stmt.where(Account.credits + amount >= 0)
    stmt = (
        stmt.values(credits=Account.credits + amount)
        .returning(Account.credits)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()
    if new_balance is not None:
        return int(new_balance)

    current = await db.execute(select(Account.credits).where(Account.id == account_id))
    available = current.scalar_one_or_none()
    if available is None:
        raise NotFound(f"Account {account_id} not found.", account_id=account_id)
    raise InsufficientCredits(required=-amount, available=int(available))


async def mutate(
    account_id: str,
    amount: int,
    kind: str,
    description: str,
    db: AsyncSession,
    *,
    idempotency_key: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    period_key: Optional[str] = None,
    before_commit: Optional[BeforeCommitHook] = None,
) -> LedgerEntry:
    """Apply one signed balance change and append its ledger entry atomically.

    A repeated ``idempotency_key`` (or ``period_key``) for the account returns
    the entry already written without touching the balance. A debit that would
    leave the balance negative raises ``InsufficientCredits`` and writes
    nothing. ``before_commit`` runs inside the same transaction after the
    entry is flushed so callers can persist dependent rows (operation links,
    audit records) that must commit or roll back together with the entry.

    The unit is committed (or rolled back) here, together with any work the
    caller has already flushed on the session. A failed unit rolls the session
    back, which expires every object the caller loaded through it.
    """
    if kind not in LEDGER_KINDS:
        raise ValueError(f"Unknown ledger entry kind: {kind}")
    amount = int(amount)

    try:
        existing = await _find_existing_entry(
            db, account_id, idempotency_key=idempotency_key, period_key=period_key
        )
        if existing is not None:
            logger.info(
                "Ledger mutation replay for account %s (key=%s, period=%s); returning entry %s",
                account_id,
                idempotency_key,
                period_key,
                existing.id,
            )
            return existing

        balance_after = await _apply_balance_delta(db, account_id, amount)
        entry = LedgerEntry(
            account_id=account_id,
            amount=amount,
            kind=kind,
            description=description,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            period_key=period_key,
            created_at=datetime.now(timezone.utc),
        )
        db.add(entry)
        await db.flush()
        if before_commit is not None:
            await before_commit(entry)
        await db.commit()
    except LedgerError:
        await rollback_session(db)
        raise
    except IntegrityError as exc:
        await rollback_session(db)
        # A concurrent writer committed the same key first; its entry wins.
        winner = await _find_existing_entry(
            db, account_id, idempotency_key=idempotency_key, period_key=period_key
        )
        if winner is not None:
            logger.info("Ledger mutation for account %s lost idempotency race to %s", account_id, winner.id)
            return winner
        raise Conflict("Ledger mutation violated a store constraint. Retry the request.") from exc
    except STORE_ERRORS as exc:
        await rollback_session(db)
        error = translate_store_error(exc)
        logger.error("Ledger mutation for account %s failed: %s", account_id, error.code)
        raise error from exc
    except Exception:
        await rollback_session(db)
        raise

    logger.info(
        "Ledger %s %+d for account %s -> balance %d (entry %s)",
        kind,
        amount,
        account_id,
        balance_after,
        entry.id,
    )
    return entry


def serialize_entry(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_ledger_summary(account_id: str, db: AsyncSession, *, limit: int = 30) -> Dict[str, Any]:
    balance = await get_balance(account_id, db)
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc())
        .limit(max(int(limit), 1))
    )
    entries = result.scalars().all()
    catalog = await list_catalog(db, enabled_only=True)
    return {
        "balance": balance,
        "costs": {item.operation_type: item.credit_cost for item in catalog},
        "recent_entries": [serialize_entry(entry) for entry in entries],
    }


async def verify_ledger(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Recompute the ledger sum for an account and compare it to the cached balance."""
    balance = await get_balance(account_id, db)
    result = await db.execute(
        select(
            func.coalesce(func.sum(LedgerEntry.amount), 0),
            func.count(LedgerEntry.id),
        ).where(LedgerEntry.account_id == account_id)
    )
    ledger_sum, entry_count = result.one()
    ledger_sum = int(ledger_sum or 0)
    consistent = ledger_sum == balance
    if not consistent:
        logger.error(
            "Ledger drift for account %s: cached=%d ledger_sum=%d",
            account_id,
            balance,
            ledger_sum,
        )
    return {
        "account_id": account_id,
        "credits": balance,
        "ledger_sum": ledger_sum,
        "entry_count": int(entry_count or 0),
        "consistent": consistent,
    }
