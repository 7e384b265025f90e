"""Usage transaction coordinator.

Accepts billable operations, hands them to the processing collaborator and
settles them against the credit ledger. In the default ``settle`` mode the
debit happens only once the work completed, so failed work is never charged.
In ``reserve`` mode the cost is held at acceptance and released again if the
work fails, so an executor with non-undoable side effects is never run unpaid.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.ledger_entry import KIND_USAGE, LedgerEntry
from models.operation import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, Operation
from services.entitlements import require_entitlement
from services.errors import InsufficientCredits, NotFound
from services.ledger import mutate
from services.processing import (
    RESULT_FAILED,
    ProcessingRequest,
    ProcessingResult,
    get_processor,
)

logger = logging.getLogger(__name__)

SETTLEMENT_SETTLE = "settle"
SETTLEMENT_RESERVE = "reserve"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _settlement_mode() -> str:
    mode = (settings.CREDIT_SETTLEMENT_MODE or SETTLEMENT_SETTLE).strip().lower()
    return mode if mode in {SETTLEMENT_SETTLE, SETTLEMENT_RESERVE} else SETTLEMENT_SETTLE


def usage_idempotency_key(operation_id: str, phase: Optional[str] = None) -> str:
    return f"operation:{operation_id}" if not phase else f"operation:{operation_id}:{phase}"


def serialize_operation(operation: Operation) -> Dict[str, Any]:
    return {
        "operation_id": operation.id,
        "operation_type": operation.operation_type,
        "status": operation.status,
        "credit_cost": operation.credit_cost,
        "input_ref": operation.input_ref,
        "result_ref": operation.result_ref,
        "ledger_entry_id": operation.ledger_entry_id,
        "error_message": operation.error_message,
        "metadata": operation.metadata_json or {},
        "created_at": operation.created_at.isoformat() if operation.created_at else None,
        "completed_at": operation.completed_at.isoformat() if operation.completed_at else None,
    }


async def get_operation(operation_id: str, db: AsyncSession, *, account_id: Optional[str] = None) -> Operation:
    stmt = select(Operation).where(Operation.id == operation_id)
    if account_id is not None:
        stmt = stmt.where(Operation.account_id == account_id)
    result = await db.execute(stmt)
    operation = result.scalar_one_or_none()
    if operation is None:
        raise NotFound(f"Operation {operation_id} not found.", operation_id=operation_id)
    return operation


async def list_operations(
    account_id: str,
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    limit: int = 20,
) -> List[Operation]:
    stmt = select(Operation).where(Operation.account_id == account_id)
    if status:
        stmt = stmt.where(Operation.status == status)
    stmt = stmt.order_by(Operation.created_at.desc()).limit(min(max(int(limit), 1), 100))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _mark_failed(operation: Operation, db: AsyncSession, message: str) -> Operation:
    operation.status = STATUS_FAILED
    operation.error_message = message
    operation.result_ref = None
    operation.completed_at = _now()
    await db.commit()
    return operation


async def accept_operation(
    account_id: str,
    operation_type: str,
    db: AsyncSession,
    *,
    input_ref: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Operation:
    """Check entitlement and record a pending operation (holding credits in reserve mode)."""
    entitlement = await require_entitlement(account_id, operation_type, db)
    operation = Operation(
        account_id=account_id,
        operation_type=operation_type,
        credit_cost=entitlement.cost,
        status=STATUS_PENDING,
        input_ref=input_ref,
        metadata_json=metadata or {},
        created_at=_now(),
    )
    db.add(operation)
    await db.commit()

    if _settlement_mode() != SETTLEMENT_RESERVE:
        return operation

    async def _link_reservation(entry: LedgerEntry) -> None:
        operation.reservation_entry_id = entry.id

    try:
        await mutate(
            account_id,
            -operation.credit_cost,
            KIND_USAGE,
            f"{operation.operation_type} reservation",
            db,
            idempotency_key=usage_idempotency_key(operation.id, "reserve"),
            reference_type="operation",
            reference_id=operation.id,
            before_commit=_link_reservation,
        )
    except InsufficientCredits:
        await db.refresh(operation)
        await _mark_failed(operation, db, "Insufficient credits to reserve operation cost.")
        raise
    await db.refresh(operation)
    return operation


async def settle_operation(operation_id: str, result: ProcessingResult, db: AsyncSession) -> Operation:
    """Apply the final processing status to a pending operation.

    Settling an operation that already left ``pending`` is a no-op, and the
    usage debit is keyed by operation id, so redelivered results never charge
    twice.
    """
    operation = await get_operation(operation_id, db)
    if operation.status != STATUS_PENDING:
        return operation

    if result.completed:
        return await _settle_completed(operation, result, db)
    return await _settle_failed(operation, result, db)


async def _settle_completed(operation: Operation, result: ProcessingResult, db: AsyncSession) -> Operation:
    if operation.reservation_entry_id:
        operation.status = STATUS_COMPLETED
        operation.result_ref = result.result_ref
        operation.ledger_entry_id = operation.reservation_entry_id
        operation.completed_at = _now()
        await db.commit()
        return operation

    async def _link_debit(entry: LedgerEntry) -> None:
        operation.status = STATUS_COMPLETED
        operation.result_ref = result.result_ref
        operation.ledger_entry_id = entry.id
        operation.completed_at = _now()

    try:
        await mutate(
            operation.account_id,
            -operation.credit_cost,
            KIND_USAGE,
            f"{operation.operation_type} processing",
            db,
            idempotency_key=usage_idempotency_key(operation.id),
            reference_type="operation",
            reference_id=operation.id,
            before_commit=_link_debit,
        )
    except InsufficientCredits as exc:
        # Balance dropped between the entitlement check and settlement.
        await db.refresh(operation)
        logger.warning(
            "Discarding result of operation %s: %s",
            operation.id,
            exc.message,
        )
        return await _mark_failed(operation, db, "Insufficient credits at settlement; result discarded.")

    await db.refresh(operation)
    return operation


async def _settle_failed(operation: Operation, result: ProcessingResult, db: AsyncSession) -> Operation:
    message = result.error or "Processing failed."
    if not operation.reservation_entry_id:
        return await _mark_failed(operation, db, message)

    async def _close_failed(entry: LedgerEntry) -> None:
        operation.status = STATUS_FAILED
        operation.error_message = message
        operation.completed_at = _now()

    await mutate(
        operation.account_id,
        operation.credit_cost,
        KIND_USAGE,
        f"{operation.operation_type} reservation release",
        db,
        idempotency_key=usage_idempotency_key(operation.id, "release"),
        reference_type="operation",
        reference_id=operation.id,
        before_commit=_close_failed,
    )
    await db.refresh(operation)
    return operation


async def execute_operation(operation: Operation, processor=None) -> ProcessingResult:
    """Run the processing collaborator, converting executor crashes into a failed result."""
    processor = processor or get_processor()
    request = ProcessingRequest(
        account_id=operation.account_id,
        operation_id=operation.id,
        operation_type=operation.operation_type,
        input_ref=operation.input_ref,
        options=dict(operation.metadata_json or {}),
    )
    try:
        return await processor.process(request)
    except Exception as exc:
        logger.exception("Processing collaborator crashed for operation %s", operation.id)
        return ProcessingResult(status=RESULT_FAILED, error=f"Processing error: {exc}")


async def run_operation(
    account_id: str,
    operation_type: str,
    db: AsyncSession,
    *,
    input_ref: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    processor=None,
) -> Operation:
    """Accept, execute and settle one operation inline."""
    operation = await accept_operation(
        account_id,
        operation_type,
        db,
        input_ref=input_ref,
        metadata=metadata,
    )
    result = await execute_operation(operation, processor)
    return await settle_operation(operation.id, result, db)


async def process_operation_job_async(operation_id: str) -> None:
    """Async pipeline executed by the RQ worker wrapper."""
    async with async_session_maker() as db:
        try:
            operation = await get_operation(operation_id, db)
        except NotFound:
            logger.warning("Operation %s not found", operation_id)
            return
        if operation.status != STATUS_PENDING:
            return
        result = await execute_operation(operation)
        await settle_operation(operation_id, result, db)


def process_operation_job(operation_id: str) -> None:
    """RQ worker entrypoint for queued operations."""
    asyncio.run(process_operation_job_async(operation_id))
