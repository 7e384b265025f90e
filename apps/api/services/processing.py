"""Image processing collaborator.

The ledger only needs the final status of a unit of work, so the executor is
kept behind a tiny interface. ``SimulatedProcessor`` reproduces the product's
current behaviour (a short timer and a placeholder result URL);
``HttpProcessor`` forwards the request to an external executor.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

RESULT_COMPLETED = "completed"
RESULT_FAILED = "failed"


@dataclass
class ProcessingRequest:
    account_id: str
    operation_id: str
    operation_type: str
    input_ref: Optional[str]
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessingResult:
    status: str
    result_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == RESULT_COMPLETED


class SimulatedProcessor:
    """Stand-in executor: waits, then returns a derived placeholder URL."""

    def __init__(self, delay_seconds: Optional[float] = None) -> None:
        if delay_seconds is None:
            delay_seconds = settings.PROCESSING_SIMULATED_DELAY_SECONDS
        self.delay_seconds = max(float(delay_seconds), 0.0)

    async def process(self, request: ProcessingRequest) -> ProcessingResult:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        stamp = int(time.time() * 1000)
        if request.input_ref and request.input_ref.startswith(("http://", "https://")):
            separator = "&" if "?" in request.input_ref else "?"
            result_ref = f"{request.input_ref}{separator}processed={stamp}"
        else:
            result_ref = f"https://placehold.co/1024x1024?text={request.operation_type}&seed={stamp}"
        return ProcessingResult(status=RESULT_COMPLETED, result_ref=result_ref)


class HttpProcessor:
    """Executor reached over HTTP: POST the request, expect ``{status, result_ref}``."""

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def process(self, request: ProcessingRequest) -> ProcessingResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "account_id": request.account_id,
            "operation_id": request.operation_id,
            "operation_type": request.operation_type,
            "input": request.input_ref,
            "options": request.options,
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/process",
                    json=body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
        except httpx.HTTPError as exc:
            logger.warning("Processing backend request failed for %s: %s", request.operation_id, exc)
            return ProcessingResult(status=RESULT_FAILED, error=f"Processing backend unreachable: {exc}")

        if response.status_code != 200:
            logger.warning(
                "Processing backend returned %s for operation %s",
                response.status_code,
                request.operation_id,
            )
            return ProcessingResult(
                status=RESULT_FAILED,
                error=f"Processing backend returned HTTP {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            return ProcessingResult(status=RESULT_FAILED, error="Processing backend returned invalid JSON")

        status = str(data.get("status") or "").strip().lower()
        result_ref = data.get("result_ref") or data.get("resultRef")
        if status == RESULT_COMPLETED and result_ref:
            return ProcessingResult(status=RESULT_COMPLETED, result_ref=str(result_ref))
        return ProcessingResult(
            status=RESULT_FAILED,
            error=str(data.get("error") or "Processing backend reported failure"),
        )


def get_processor():
    """Return the configured processing collaborator."""
    if settings.PROCESSING_BACKEND_URL:
        return HttpProcessor(
            settings.PROCESSING_BACKEND_URL,
            api_key=settings.PROCESSING_API_KEY,
            timeout_seconds=float(settings.PROCESSING_TIMEOUT_SECONDS),
        )
    return SimulatedProcessor()
