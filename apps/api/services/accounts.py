"""Account provisioning and serialization helpers."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import ROLE_USER, Account
from models.ledger_entry import KIND_SIGNUP_GRANT
from services.ledger import STORE_ERRORS, mutate, rollback_session, translate_store_error

logger = logging.getLogger(__name__)


async def ensure_account(account_id: str, db: AsyncSession, *, email: Optional[str] = None) -> Account:
    """Return the account, creating it with its signup grant on first contact."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is not None:
        return account

    account = Account(
        id=account_id,
        email=email,
        credits=0,
        role=ROLE_USER,
        suspended=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(account)
    try:
        await db.flush()
    except IntegrityError:
        # Another request provisioned the same account concurrently.
        await rollback_session(db)
        result = await db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one()
    except STORE_ERRORS as exc:
        await rollback_session(db)
        raise translate_store_error(exc) from exc

    grant = max(int(settings.SIGNUP_CREDITS), 0)
    try:
        if grant > 0:
            # The account row commits in the same unit as its grant.
            await mutate(
                account_id,
                grant,
                KIND_SIGNUP_GRANT,
                "Signup credit grant",
                db,
                idempotency_key="signup",
            )
        else:
            await db.commit()
    except STORE_ERRORS as exc:
        await rollback_session(db)
        raise translate_store_error(exc) from exc
    except Exception:
        await rollback_session(db)
        raise
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one()
    logger.info("Provisioned account %s with %d signup credits", account_id, grant)
    return account


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "account_id": account.id,
        "email": account.email,
        "credits": account.credits,
        "role": account.role,
        "suspended": bool(account.suspended),
        "suspended_reason": account.suspended_reason,
        "billing_customer_ref": account.billing_customer_ref,
    }
