"""Billing provider webhook endpoint.

Signature verification happens here, before anything reaches the reconciler.
Once an event is verified and well-formed it is always acknowledged, except
when the ledger store is unavailable or a concurrent write conflicted; those
return an error so the provider redelivers.
"""

from __future__ import annotations

import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.billing_events import parse_billing_event
from services.reconciler import reconcile_billing_event

router = APIRouter()
logger = logging.getLogger(__name__)


def _verify_signature(payload: bytes, sig_header: str | None) -> None:
    if not settings.STRIPE_WEBHOOK_SECRET:
        if settings.BILLING_WEBHOOK_ALLOW_UNSIGNED:
            return
        logger.error("STRIPE_WEBHOOK_SECRET not configured - webhook signature verification is required")
        raise HTTPException(status_code=503, detail="Webhook verification not configured")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except ValueError as exc:
        logger.warning("Invalid webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Invalid webhook signature: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid signature") from exc


@router.post("/billing")
async def handle_billing_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Receive one billing provider event and reconcile it."""
    payload = await request.body()
    _verify_signature(payload, request.headers.get("stripe-signature"))

    try:
        raw_event = json.loads(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    if not isinstance(raw_event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        event = parse_billing_event(raw_event)
    except ValidationError as exc:
        logger.warning(
            "Rejected malformed billing event %s (%s): %s",
            raw_event.get("id"),
            raw_event.get("type"),
            exc.errors(include_url=False),
        )
        raise HTTPException(status_code=400, detail="Malformed billing event") from exc

    logger.info("Received billing webhook %s (%s)", event.id, event.type)
    outcome = await reconcile_billing_event(event, db)
    return {"received": True, "event_id": event.id, "outcome": outcome["status"]}
