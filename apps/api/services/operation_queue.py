"""Durable operation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.operation import STATUS_PENDING, Operation
from services.processing import RESULT_FAILED, ProcessingResult
from services.usage import settle_operation

logger = logging.getLogger(__name__)

OPERATION_QUEUE_NAME = "operation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_operation_queue() -> Queue:
    """Return the configured operation queue."""
    return Queue(
        name=OPERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_operation_job(operation_id: str) -> Job:
    """Enqueue an accepted operation for background processing."""
    queue = get_operation_queue()
    return queue.enqueue(
        "services.usage.process_operation_job",
        operation_id,
        job_id=f"operation:{operation_id}",
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def recover_stalled_operations(max_age_minutes: int = 30) -> int:
    """Fail pending operations left behind by restarts or worker interruptions.

    Settlement releases any reserved credits, so nothing stays held.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(Operation.id).where(
                Operation.status == STATUS_PENDING,
                Operation.created_at < cutoff,
            )
        )
        operation_ids = list(result.scalars().all())
        for operation_id in operation_ids:
            await settle_operation(
                operation_id,
                ProcessingResult(
                    status=RESULT_FAILED,
                    error="Operation was interrupted. Submit it again.",
                ),
                db,
            )
        if operation_ids:
            logger.info("Recovered %d stalled operations", len(operation_ids))
        return len(operation_ids)
