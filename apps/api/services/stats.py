"""Per-account usage statistics for the dashboard."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.ledger_entry import KIND_USAGE, LedgerEntry
from models.operation import STATUS_COMPLETED, Operation
from services.ledger import get_balance
from services.usage import list_operations, serialize_operation


def _month_start(now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def get_usage_stats(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    month_start = _month_start()
    completed = (Operation.account_id == account_id, Operation.status == STATUS_COMPLETED)

    total = await db.execute(select(func.count(Operation.id)).where(*completed))
    this_month = await db.execute(
        select(func.count(Operation.id)).where(*completed, Operation.created_at >= month_start)
    )
    # Reservation releases are positive usage rows, so the net sum is what was actually spent.
    spent = await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.kind == KIND_USAGE,
            LedgerEntry.created_at >= month_start,
        )
    )
    most_used = await db.execute(
        select(Operation.operation_type, func.count(Operation.id).label("uses"))
        .where(*completed)
        .group_by(Operation.operation_type)
        .order_by(func.count(Operation.id).desc(), Operation.operation_type.asc())
        .limit(1)
    )
    most_used_row = most_used.first()
    recent = await list_operations(account_id, db, limit=10)

    return {
        "total_operations": int(total.scalar() or 0),
        "operations_this_month": int(this_month.scalar() or 0),
        "credits_used_this_month": abs(min(int(spent.scalar() or 0), 0)),
        "current_credits": await get_balance(account_id, db),
        "most_used_operation": most_used_row[0] if most_used_row else "",
        "recent_activity": [serialize_operation(operation) for operation in recent],
    }
