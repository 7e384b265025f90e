"""Credit ledger error taxonomy.

Services raise these; ``main`` installs a single exception handler that maps
each one to its HTTP status and a stable ``code`` in the response body.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for ledger, entitlement and billing failures."""

    status_code = 500
    code = "ledger_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.context:
            payload["context"] = self.context
        return payload


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"


class InsufficientCredits(LedgerError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Insufficient credits. Required: {required}, available: {available}.",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class AccountSuspended(LedgerError):
    status_code = 403
    code = "account_suspended"


class Forbidden(LedgerError):
    status_code = 403
    code = "forbidden"


class UnknownOperation(LedgerError):
    status_code = 400
    code = "unknown_operation"


class Conflict(LedgerError):
    """Concurrent mutation lost a race; retrying the whole request once is safe."""

    status_code = 409
    code = "conflict"


class StoreUnavailable(LedgerError):
    status_code = 503
    code = "store_unavailable"
