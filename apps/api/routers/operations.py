"""Image operations router: entitlement preflight, processing and history."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_account_context, get_active_account_context
from routers.rate_limit import rate_limit
from services.catalog import list_catalog
from services.entitlements import resolve
from services.ledger import get_balance
from services.operation_queue import enqueue_operation_job
from services.processing import RESULT_FAILED, ProcessingResult, get_processor
from services.stats import get_usage_stats
from services.usage import (
    accept_operation,
    get_operation,
    list_operations,
    run_operation,
    serialize_operation,
    settle_operation,
)

router = APIRouter()
logger = logging.getLogger(__name__)

TEXT_TO_IMAGE = "text_to_image"


class ProcessImageRequest(BaseModel):
    operation_type: str = Field(min_length=1, max_length=64)
    image_url: str = Field(min_length=1, max_length=2048)
    options: Dict[str, Any] = Field(default_factory=dict)
    run_async: bool = False


class TextToImageRequest(BaseModel):
    prompt: str = Field(max_length=2000)
    options: Dict[str, Any] = Field(default_factory=dict)
    run_async: bool = False

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Prompt is required")
        return value.strip()


async def _dispatch(
    context: AccountContext,
    operation_type: str,
    input_ref: str,
    metadata: Dict[str, Any],
    run_async: bool,
    processor,
    db: AsyncSession,
):
    if not run_async:
        operation = await run_operation(
            context.account_id,
            operation_type,
            db,
            input_ref=input_ref,
            metadata=metadata,
            processor=processor,
        )
        return {
            "success": operation.status == "completed",
            "operation": serialize_operation(operation),
            "processed_url": operation.result_ref,
            "credits_used": operation.credit_cost if operation.status == "completed" else 0,
            "balance": await get_balance(context.account_id, db),
        }

    operation = await accept_operation(
        context.account_id,
        operation_type,
        db,
        input_ref=input_ref,
        metadata=metadata,
    )
    try:
        enqueue_operation_job(operation.id)
    except (RedisError, OSError) as exc:
        logger.error("Failed to enqueue operation %s: %s", operation.id, exc)
        await settle_operation(
            operation.id,
            ProcessingResult(status=RESULT_FAILED, error="Operation queue unavailable."),
            db,
        )
        raise HTTPException(status_code=503, detail="Operation queue unavailable. Try again later.") from exc
    return JSONResponse(
        status_code=202,
        content={"success": True, "operation": serialize_operation(operation)},
    )


@router.get("/catalog")
async def operation_catalog(db: AsyncSession = Depends(get_db)):
    items = await list_catalog(db, enabled_only=True)
    return {
        "operations": [
            {"operation_type": item.operation_type, "name": item.name, "credit_cost": item.credit_cost}
            for item in items
        ]
    }


@router.get("/entitlement")
async def entitlement_preflight(
    operation_type: str = Query(min_length=1),
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    entitlement = await resolve(context.account_id, operation_type, db)
    return {
        "allowed": entitlement.allowed,
        "cost": entitlement.cost,
        "balance": entitlement.balance,
        "reason": entitlement.reason,
    }


@router.post("")
async def process_image(
    request: ProcessImageRequest,
    _rate_limit: None = Depends(rate_limit("operation_process", limit=60, window_seconds=60)),
    context: AccountContext = Depends(get_active_account_context),
    processor=Depends(get_processor),
    db: AsyncSession = Depends(get_db),
):
    return await _dispatch(
        context,
        request.operation_type,
        request.image_url,
        request.options,
        request.run_async,
        processor,
        db,
    )


@router.post("/text-to-image")
async def text_to_image(
    request: TextToImageRequest,
    _rate_limit: None = Depends(rate_limit("operation_text_to_image", limit=30, window_seconds=60)),
    context: AccountContext = Depends(get_active_account_context),
    processor=Depends(get_processor),
    db: AsyncSession = Depends(get_db),
):
    metadata = {"prompt": request.prompt, **request.options}
    return await _dispatch(
        context,
        TEXT_TO_IMAGE,
        request.prompt,
        metadata,
        request.run_async,
        processor,
        db,
    )


@router.get("")
async def list_account_operations(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    operations = await list_operations(context.account_id, db, status=status, limit=limit)
    return {"operations": [serialize_operation(operation) for operation in operations]}


@router.get("/stats")
async def usage_stats(
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_usage_stats(context.account_id, db)


@router.get("/{operation_id}")
async def get_account_operation(
    operation_id: str,
    context: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    operation = await get_operation(operation_id, db, account_id=context.account_id)
    return serialize_operation(operation)
