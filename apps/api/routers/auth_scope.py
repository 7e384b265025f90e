"""Authentication dependencies resolving the per-request account context."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.accounts import ensure_account
from services.errors import AccountSuspended
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AccountContext:
    """Immutable snapshot of the caller, resolved once per request."""

    account_id: str
    email: Optional[str] = None
    role: str = "user"
    suspended: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def ensure_account_scope(context_account_id: str, supplied_account_id: Optional[str]) -> str:
    """Return the authenticated account id and reject cross-account attempts."""
    if supplied_account_id and supplied_account_id != context_account_id:
        raise HTTPException(status_code=403, detail="account_id does not match authenticated session.")
    return context_account_id


async def get_account_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
) -> AccountContext:
    """Verify the Bearer session token and load (or provision) its account."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    account = await ensure_account(claims.account_id, db, email=claims.email)
    return AccountContext(
        account_id=account.id,
        email=account.email,
        role=account.role,
        suspended=bool(account.suspended),
    )


async def get_active_account_context(
    context: AccountContext = Depends(get_account_context),
) -> AccountContext:
    """Account context for routes a suspended account may not use."""
    if context.suspended:
        raise AccountSuspended("Account is suspended.")
    return context
