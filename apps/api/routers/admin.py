"""Admin router: account management, audit log and ledger verification."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_account_context
from routers.rate_limit import rate_limit
from services.accounts import serialize_account
from services.admin import list_audit_log, manage_account, require_admin
from services.ledger import get_account, get_ledger_summary, verify_ledger

router = APIRouter()


class ManageAccountRequest(BaseModel):
    action: Literal["ban", "unban", "adjust_credits", "update_role"]
    target_account_id: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


async def get_admin_context(
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
) -> AccountContext:
    await require_admin(context.account_id, db)
    return context


@router.post("/accounts/manage")
async def manage_account_endpoint(
    request: ManageAccountRequest,
    _rate_limit: None = Depends(rate_limit("admin_manage", limit=120, window_seconds=60)),
    admin: AccountContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return await manage_account(
        admin.account_id,
        request.action,
        request.target_account_id,
        request.data,
        db,
    )


@router.get("/accounts/{account_id}")
async def get_account_detail(
    account_id: str,
    admin: AccountContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    account = await get_account(account_id, db)
    await db.refresh(account)
    return {
        "account": serialize_account(account),
        "ledger": await get_ledger_summary(account_id, db),
    }


@router.get("/accounts/{account_id}/ledger/verify")
async def verify_account_ledger(
    account_id: str,
    admin: AccountContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return await verify_ledger(account_id, db)


@router.get("/audit-log")
async def audit_log(
    target_account_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    admin: AccountContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return {"entries": await list_audit_log(db, target_account_id=target_account_id, limit=limit)}
