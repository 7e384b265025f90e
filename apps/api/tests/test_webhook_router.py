import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from services.session_token import create_session_token


WEBHOOK_SECRET = "whsec_test_secret"
WEBHOOK_ACCOUNT_ID = "webhook-account"
WEBHOOK_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(WEBHOOK_ACCOUNT_ID)['token']}"}


def _signed_headers(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {
        "Content-Type": "application/json",
        "Stripe-Signature": f"t={timestamp},v1={signature}",
    }


def _subscription_payload(event_id: str) -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_webhook",
                    "object": "subscription",
                    "customer": "cus_webhook",
                    "status": "active",
                    "current_period_start": 1760000000,
                    "current_period_end": 1762592000,
                    "items": {"data": [{"price": {"id": "price_pro"}}]},
                    "metadata": {"account_id": WEBHOOK_ACCOUNT_ID},
                }
            },
        }
    )


@pytest_asyncio.fixture
async def webhook_client(tmp_path):
    db_path = tmp_path / "webhooks.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with patch("routers.webhooks.settings.STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.mark.asyncio
async def test_signed_subscription_event_grants_plan_bonus_once(webhook_client):
    me_resp = await webhook_client.get("/auth/me", headers=WEBHOOK_AUTH_HEADER)
    assert me_resp.status_code == 200
    assert me_resp.json()["credits"] == 10

    payload = _subscription_payload("evt_1")
    for expected_outcome in ("processed", "duplicate"):
        resp = await webhook_client.post("/webhooks/billing", content=payload, headers=_signed_headers(payload))
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "event_id": "evt_1", "outcome": expected_outcome}

    credits_resp = await webhook_client.get("/billing/credits", headers=WEBHOOK_AUTH_HEADER)
    assert credits_resp.json()["balance"] == 510

    subscription_resp = await webhook_client.get("/billing/subscription", headers=WEBHOOK_AUTH_HEADER)
    assert subscription_resp.json()["active"] is True

    me_resp = await webhook_client.get("/auth/me", headers=WEBHOOK_AUTH_HEADER)
    assert me_resp.json()["billing_customer_ref"] == "cus_webhook"


@pytest.mark.asyncio
async def test_unverified_webhooks_are_rejected(webhook_client):
    payload = _subscription_payload("evt_forged")

    bad_sig = await webhook_client.post(
        "/webhooks/billing",
        content=payload,
        headers=_signed_headers(payload, secret="whsec_wrong"),
    )
    assert bad_sig.status_code == 400

    missing_sig = await webhook_client.post(
        "/webhooks/billing",
        content=payload,
        headers={"Content-Type": "application/json"},
    )
    assert missing_sig.status_code == 400

    expired_sig = await webhook_client.post(
        "/webhooks/billing",
        content=payload,
        headers=_signed_headers(payload, timestamp=int(time.time()) - 3600),
    )
    assert expired_sig.status_code == 400


@pytest.mark.asyncio
async def test_webhook_requires_configured_secret(webhook_client):
    payload = _subscription_payload("evt_unconfigured")
    with patch("routers.webhooks.settings.STRIPE_WEBHOOK_SECRET", ""):
        resp = await webhook_client.post("/webhooks/billing", content=payload, headers=_signed_headers(payload))
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_malformed_and_unknown_events(webhook_client):
    malformed = json.dumps({"id": "evt_broken", "type": "invoice.payment_succeeded", "data": {"object": {}}})
    resp = await webhook_client.post("/webhooks/billing", content=malformed, headers=_signed_headers(malformed))
    assert resp.status_code == 400

    unknown = json.dumps({"id": "evt_payout", "type": "payout.paid", "data": {"object": {"id": "po_1"}}})
    resp = await webhook_client.post("/webhooks/billing", content=unknown, headers=_signed_headers(unknown))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"

    orphan = json.dumps(
        {
            "id": "evt_orphan_invoice",
            "type": "invoice.payment_succeeded",
            "data": {
                "object": {
                    "id": "in_orphan",
                    "subscription": "sub_missing",
                    "billing_reason": "subscription_cycle",
                }
            },
        }
    )
    resp = await webhook_client.post("/webhooks/billing", content=orphan, headers=_signed_headers(orphan))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unmatched"


@pytest.mark.asyncio
async def test_store_failures_ask_the_provider_to_redeliver(webhook_client):
    await webhook_client.get("/auth/me", headers=WEBHOOK_AUTH_HEADER)
    payload = _subscription_payload("evt_retry")

    refused = OperationalError("SELECT", {}, Exception("connection refused"))
    with patch("services.reconciler._already_processed", side_effect=refused):
        outage = await webhook_client.post("/webhooks/billing", content=payload, headers=_signed_headers(payload))
    assert outage.status_code == 503
    assert outage.json()["code"] == "store_unavailable"

    locked = OperationalError("SELECT", {}, Exception("database is locked"))
    with patch("services.reconciler._already_processed", side_effect=locked):
        contended = await webhook_client.post("/webhooks/billing", content=payload, headers=_signed_headers(payload))
    assert contended.status_code == 409
    assert contended.json()["code"] == "conflict"

    redelivered = await webhook_client.post("/webhooks/billing", content=payload, headers=_signed_headers(payload))
    assert redelivered.status_code == 200
    assert redelivered.json()["outcome"] == "processed"

    credits_resp = await webhook_client.get("/billing/credits", headers=WEBHOOK_AUTH_HEADER)
    assert credits_resp.json()["balance"] == 510
