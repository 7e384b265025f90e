"""Entitlement resolution: may this account spend credits on this operation?"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog import get_enabled_operation
from services.errors import AccountSuspended, InsufficientCredits, LedgerError, UnknownOperation
from services.ledger import get_account, get_balance

REASON_UNKNOWN_OPERATION = "unknown_operation"
REASON_ACCOUNT_SUSPENDED = "account_suspended"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass
class Entitlement:
    allowed: bool
    cost: int
    balance: int
    operation_type: str
    reason: Optional[str] = None
    operation_name: Optional[str] = None

    def raise_for_denial(self) -> None:
        """Raise the error matching ``reason`` when the entitlement is denied."""
        if self.allowed:
            return
        error: LedgerError
        if self.reason == REASON_UNKNOWN_OPERATION:
            error = UnknownOperation(
                f"Operation '{self.operation_type}' is not available.",
                operation_type=self.operation_type,
            )
        elif self.reason == REASON_ACCOUNT_SUSPENDED:
            error = AccountSuspended("Account is suspended.")
        else:
            error = InsufficientCredits(required=self.cost, available=self.balance)
        raise error


async def resolve(account_id: str, operation_type: str, db: AsyncSession) -> Entitlement:
    """Read-only entitlement check. Never mutates the ledger.

    The balance read here may be stale by the time the debit runs; the ledger
    mutation re-validates it.
    """
    account = await get_account(account_id, db)
    balance = await get_balance(account_id, db)

    try:
        item = await get_enabled_operation(operation_type, db)
    except UnknownOperation:
        return Entitlement(
            allowed=False,
            cost=0,
            balance=balance,
            operation_type=operation_type,
            reason=REASON_UNKNOWN_OPERATION,
        )

    cost = int(item.credit_cost)
    reason: Optional[str] = None
    if account.suspended:
        reason = REASON_ACCOUNT_SUSPENDED
    elif balance < cost:
        reason = REASON_INSUFFICIENT_CREDITS

    return Entitlement(
        allowed=reason is None,
        cost=cost,
        balance=balance,
        operation_type=operation_type,
        reason=reason,
        operation_name=item.name,
    )


async def require_entitlement(account_id: str, operation_type: str, db: AsyncSession) -> Entitlement:
    entitlement = await resolve(account_id, operation_type, db)
    entitlement.raise_for_denial()
    return entitlement
