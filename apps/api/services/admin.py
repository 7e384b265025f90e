"""Privileged account management with an append-only audit trail."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import ACCOUNT_ROLES, Account
from models.audit_log import AuditLogEntry
from models.ledger_entry import KIND_ADMIN_ADJUSTMENT, LedgerEntry
from services.errors import Forbidden, LedgerError
from services.ledger import get_account, mutate

logger = logging.getLogger(__name__)

ACTION_BAN = "ban"
ACTION_UNBAN = "unban"
ACTION_ADJUST_CREDITS = "adjust_credits"
ACTION_UPDATE_ROLE = "update_role"
ADMIN_ACTIONS = (ACTION_BAN, ACTION_UNBAN, ACTION_ADJUST_CREDITS, ACTION_UPDATE_ROLE)


class InvalidAdminRequest(LedgerError):
    status_code = 400
    code = "invalid_admin_request"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def require_admin(admin_account_id: str, db: AsyncSession) -> Account:
    admin = await get_account(admin_account_id, db)
    if not admin.is_admin or admin.suspended:
        logger.warning("Account %s attempted an admin action without the admin role", admin_account_id)
        raise Forbidden("Admin access required.")
    return admin


def _audit_record(admin_id: str, action: str, target_account_id: str, details: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        admin_id=admin_id,
        action=action,
        target_account_id=target_account_id,
        details_json=details,
        created_at=_now(),
    )


async def adjust(
    admin_account_id: str,
    target_account_id: str,
    delta: int,
    reason: Optional[str],
    db: AsyncSession,
    *,
    idempotency_key: Optional[str] = None,
) -> LedgerEntry:
    """Apply a manual credit adjustment and audit it in the same commit.

    The adjustment obeys the same non-negative rule as usage debits; when the
    mutation fails nothing is written, including the audit record.

    Caller keys live in their own namespace so they never match the keys the
    system writes (``signup``, billing event ids).
    """
    await require_admin(admin_account_id, db)
    delta = int(delta)
    if delta == 0:
        raise InvalidAdminRequest("Credit adjustment must be non-zero.")
    await get_account(target_account_id, db)

    async def _write_audit(entry: LedgerEntry) -> None:
        db.add(
            _audit_record(
                admin_account_id,
                ACTION_ADJUST_CREDITS,
                target_account_id,
                {
                    "credit_change": delta,
                    "new_balance": entry.balance_after,
                    "reason": reason,
                    "ledger_entry_id": entry.id,
                },
            )
        )

    sign = "+" if delta > 0 else ""
    entry = await mutate(
        target_account_id,
        delta,
        KIND_ADMIN_ADJUSTMENT,
        f"Admin credit adjustment: {sign}{delta}" + (f" ({reason})" if reason else ""),
        db,
        idempotency_key=f"admin:{idempotency_key}" if idempotency_key else None,
        reference_type="admin",
        reference_id=admin_account_id,
        before_commit=_write_audit,
    )
    logger.info(
        "Admin %s adjusted account %s by %+d -> %d",
        admin_account_id,
        target_account_id,
        delta,
        entry.balance_after,
    )
    return entry


async def _set_suspension(
    admin_account_id: str,
    target: Account,
    suspended: bool,
    reason: Optional[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    action = ACTION_BAN if suspended else ACTION_UNBAN
    target.suspended = suspended
    target.suspended_at = _now() if suspended else None
    target.suspended_reason = reason if suspended else None
    details: Dict[str, Any] = {"reason": reason} if suspended else {}
    db.add(_audit_record(admin_account_id, action, target.id, details))
    await db.commit()
    return details


async def _update_role(admin_account_id: str, target: Account, role: Optional[str], db: AsyncSession) -> Dict[str, Any]:
    if role not in ACCOUNT_ROLES:
        raise InvalidAdminRequest("Valid role is required.", allowed=list(ACCOUNT_ROLES))
    details = {"previous_role": target.role, "new_role": role}
    target.role = role
    db.add(_audit_record(admin_account_id, ACTION_UPDATE_ROLE, target.id, details))
    await db.commit()
    return details


async def manage_account(
    admin_account_id: str,
    action: str,
    target_account_id: str,
    data: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Dispatch one admin action (ban, unban, adjust_credits, update_role)."""
    if action not in ADMIN_ACTIONS:
        raise InvalidAdminRequest(f"Invalid action '{action}'.", allowed=list(ADMIN_ACTIONS))
    await require_admin(admin_account_id, db)
    target = await get_account(target_account_id, db)

    if action == ACTION_ADJUST_CREDITS:
        credits = data.get("credits")
        if isinstance(credits, bool) or not isinstance(credits, int):
            raise InvalidAdminRequest("Credits amount is required.")
        entry = await adjust(
            admin_account_id,
            target_account_id,
            credits,
            data.get("reason"),
            db,
            idempotency_key=data.get("idempotency_key"),
        )
        details: Dict[str, Any] = {
            "credit_change": credits,
            "new_balance": entry.balance_after,
            "ledger_entry_id": entry.id,
        }
    elif action in (ACTION_BAN, ACTION_UNBAN):
        details = await _set_suspension(
            admin_account_id,
            target,
            action == ACTION_BAN,
            data.get("reason"),
            db,
        )
    else:
        details = await _update_role(admin_account_id, target, data.get("role"), db)

    logger.info("Admin %s performed %s on account %s", admin_account_id, action, target_account_id)
    return {
        "success": True,
        "action": action,
        "target_account_id": target_account_id,
        "details": details,
        "message": f"Account {action} completed successfully",
    }


async def list_audit_log(
    db: AsyncSession,
    *,
    target_account_id: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    stmt = select(AuditLogEntry)
    if target_account_id:
        stmt = stmt.where(AuditLogEntry.target_account_id == target_account_id)
    stmt = stmt.order_by(AuditLogEntry.created_at.desc()).limit(min(max(int(limit), 1), 200))
    result = await db.execute(stmt)
    return [
        {
            "id": record.id,
            "admin_id": record.admin_id,
            "action": record.action,
            "target_account_id": record.target_account_id,
            "details": record.details_json or {},
            "created_at": record.created_at.isoformat() if record.created_at else None,
        }
        for record in result.scalars().all()
    ]
