"""
Authentication router: current account profile.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from database import get_db
from routers.auth_scope import AccountContext, get_account_context
from services.ledger import get_account

router = APIRouter()


class CurrentAccountResponse(BaseModel):
    account_id: str
    email: Optional[str] = None
    role: str
    credits: int
    suspended: bool = False
    billing_customer_ref: Optional[str] = None


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_account(
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the authenticated account, provisioning it on first contact."""
    account = await get_account(context.account_id, db)
    await db.refresh(account)
    return CurrentAccountResponse(
        account_id=account.id,
        email=account.email,
        role=account.role,
        credits=account.credits,
        suspended=bool(account.suspended),
        billing_customer_ref=account.billing_customer_ref,
    )
