"""
Liveness, readiness and dependency health endpoints.
"""

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
import redis.asyncio as redis

from config import settings
from database import async_session_maker
from models.operation_catalog import CatalogOperation

router = APIRouter()


async def _probe_ledger_store() -> Optional[str]:
    """Return ``None`` when the ledger database answers, else the failure text."""
    try:
        async with async_session_maker() as db:
            await db.execute(select(func.count()).select_from(CatalogOperation))
    except Exception as e:
        return str(e)
    return None


async def _probe_redis() -> Optional[str]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as e:
        return str(e)
    finally:
        await client.aclose()
    return None


@router.get("/health")
async def health_check():
    """
    Dependency report for operators.
    Redis only backs the job queue and rate limits, so losing it degrades the
    service without taking the ledger down.
    """
    database_error = await _probe_ledger_store()
    redis_error = await _probe_redis()

    status = "healthy"
    if database_error:
        status = "unhealthy"
    elif redis_error:
        status = "degraded"

    return {
        "status": status,
        "database": f"down: {database_error}" if database_error else "up",
        "redis": f"down: {redis_error}" if redis_error else "up",
        "settlement_mode": settings.CREDIT_SETTLEMENT_MODE,
        "billing_webhook_verification": "configured" if settings.STRIPE_WEBHOOK_SECRET else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the ledger database (and its catalog table) can be queried."""
    database_error = await _probe_ledger_store()
    if database_error:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": ["database"], "error": database_error},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
