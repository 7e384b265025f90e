"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.ledger_entry import KIND_PURCHASE
from routers.auth_scope import AccountContext, ensure_account_scope, get_account_context, get_active_account_context
from routers.rate_limit import rate_limit
from services.ledger import get_ledger_summary, mutate, serialize_entry
from services.reconciler import get_subscription_summary

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    account_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = Field(default=None, max_length=200)


@router.get("/credits")
async def credits_summary(
    account_id: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=200),
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(context.account_id, account_id)
    return await get_ledger_summary(scoped_account_id, db, limit=limit)


@router.get("/subscription")
async def subscription_status(
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_subscription_summary(context.account_id, db)


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    context: AccountContext = Depends(get_active_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(context.account_id, request.account_id)

    if not settings.MANUAL_TOPUP_ENABLED:
        raise HTTPException(status_code=503, detail="Manual top-up is disabled. Enable MANUAL_TOPUP_ENABLED to use it.")

    billing_reference = request.billing_reference or None
    entry = await mutate(
        scoped_account_id,
        request.credits,
        KIND_PURCHASE,
        f"Credit purchase: {request.credits} credits",
        db,
        idempotency_key=f"purchase:{billing_reference}" if billing_reference else None,
        reference_type="manual",
        reference_id=billing_reference,
    )
    logger.info("Manual top-up of %d credits for account %s", request.credits, scoped_account_id)
    return {
        "ok": True,
        "credits_added": entry.amount,
        "balance_after": entry.balance_after,
        "entry": serialize_entry(entry),
    }
