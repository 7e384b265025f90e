"""Fixed-window request quotas for credit-spending endpoints.

Counters live in Redis so every API replica shares them. When Redis cannot be
reached the limiter degrades to per-process counters instead of failing the
request.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

# key -> (hits in window, window reset epoch seconds)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_bucket(request: Request) -> str:
    """Bucket by bearer credential when present, else by client address."""
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        digest = hashlib.sha256(authorization[7:].strip().encode("utf-8")).hexdigest()[:24]
        return f"token:{digest}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "anonymous"


async def _hit_redis(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            hits, _, ttl = await pipe.execute()
    finally:
        await client.aclose()
    return int(hits), max(int(ttl), 1)


async def _hit_local(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        hits, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            hits, reset_at = 0, now + window_seconds
        hits += 1
        _local_counters[key] = (hits, reset_at)
    return hits, max(int(reset_at - now), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Build a dependency allowing ``limit`` calls per caller every ``window_seconds``."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"studio:rate:{prefix}:{_caller_bucket(request)}"
        try:
            hits, retry_after = await _hit_redis(key, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.debug("Rate limit store unavailable, counting locally: %s", exc)
            hits, retry_after = await _hit_local(key, window_seconds)

        if hits > limit:
            logger.info("Rate limit %s exceeded by %s", prefix, key)
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix} requests. Retry in {retry_after}s.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
