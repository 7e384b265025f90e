import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.account import Account
from models.audit_log import AuditLogEntry
from models.ledger_entry import LedgerEntry
from services.accounts import ensure_account
from services.admin import adjust
from services.catalog import seed_default_catalog
from services.errors import Forbidden, InsufficientCredits
from services.ledger import get_balance, verify_ledger
from services.session_token import create_session_token


ADMIN_ID = "admin-account"
TARGET_ID = "target-account"
ADMIN_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(ADMIN_ID)['token']}"}
TARGET_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TARGET_ID)['token']}"}


@pytest_asyncio.fixture
async def admin_client(tmp_path):
    db_path = tmp_path / "admin.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with session_maker() as session:
        await seed_default_catalog(session)
        await ensure_account(ADMIN_ID, session)
        await ensure_account(TARGET_ID, session)
        await session.execute(update(Account).where(Account.id == ADMIN_ID).values(role="admin"))
        await session.commit()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


async def _audit_count(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(func.count(AuditLogEntry.id)))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_overdrawing_adjustment_fails_without_audit_record(admin_client):
    client, session_maker = admin_client

    grant = await client.post(
        "/admin/accounts/manage",
        json={"action": "adjust_credits", "target_account_id": TARGET_ID, "data": {"credits": 5, "reason": "goodwill"}},
        headers=ADMIN_AUTH_HEADER,
    )
    assert grant.status_code == 200
    assert grant.json()["details"]["new_balance"] == 15
    assert await _audit_count(session_maker) == 1

    overdraw = await client.post(
        "/admin/accounts/manage",
        json={"action": "adjust_credits", "target_account_id": TARGET_ID, "data": {"credits": -20}},
        headers=ADMIN_AUTH_HEADER,
    )
    assert overdraw.status_code == 402
    assert overdraw.json()["code"] == "insufficient_credits"

    async with session_maker() as session:
        assert await get_balance(TARGET_ID, session) == 15
        assert (await verify_ledger(TARGET_ID, session))["consistent"] is True
    assert await _audit_count(session_maker) == 1


@pytest.mark.asyncio
async def test_adjustment_key_cannot_collide_with_system_keys(admin_client):
    client, session_maker = admin_client
    body = {
        "action": "adjust_credits",
        "target_account_id": TARGET_ID,
        "data": {"credits": 5, "reason": "goodwill", "idempotency_key": "signup"},
    }

    first = await client.post("/admin/accounts/manage", json=body, headers=ADMIN_AUTH_HEADER)
    assert first.status_code == 200
    assert first.json()["details"]["new_balance"] == 15
    first_entry_id = first.json()["details"]["ledger_entry_id"]

    repeat = await client.post("/admin/accounts/manage", json=body, headers=ADMIN_AUTH_HEADER)
    assert repeat.status_code == 200
    assert repeat.json()["details"]["ledger_entry_id"] == first_entry_id

    async with session_maker() as session:
        assert await get_balance(TARGET_ID, session) == 15
        result = await session.execute(select(LedgerEntry).where(LedgerEntry.account_id == TARGET_ID))
        kinds = sorted(entry.kind for entry in result.scalars().all())
        assert kinds == ["admin_adjustment", "signup_grant"]
        assert (await verify_ledger(TARGET_ID, session))["consistent"] is True
    assert await _audit_count(session_maker) == 1


@pytest.mark.asyncio
async def test_adjust_service_enforces_admin_role(admin_client):
    _, session_maker = admin_client

    async with session_maker() as session:
        with pytest.raises(Forbidden):
            await adjust(TARGET_ID, TARGET_ID, 100, "self-service", session)

        entry = await adjust(ADMIN_ID, TARGET_ID, -4, "refund reversal", session)
        assert entry.kind == "admin_adjustment"
        assert entry.balance_after == 6
        assert entry.reference_id == ADMIN_ID
        entry_id = entry.id

        # The failed adjustment rolls the session back and expires ``entry``.
        with pytest.raises(InsufficientCredits):
            await adjust(ADMIN_ID, TARGET_ID, -7, None, session)
        assert await get_balance(TARGET_ID, session) == 6

        result = await session.execute(select(AuditLogEntry))
        records = result.scalars().all()
    assert len(records) == 1
    assert records[0].details_json["ledger_entry_id"] == entry_id
    assert records[0].details_json["credit_change"] == -4


@pytest.mark.asyncio
async def test_non_admin_cannot_manage_accounts(admin_client):
    client, session_maker = admin_client

    resp = await client.post(
        "/admin/accounts/manage",
        json={"action": "adjust_credits", "target_account_id": TARGET_ID, "data": {"credits": 1000}},
        headers=TARGET_AUTH_HEADER,
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"

    audit_resp = await client.get("/admin/audit-log", headers=TARGET_AUTH_HEADER)
    assert audit_resp.status_code == 403
    assert await _audit_count(session_maker) == 0


@pytest.mark.asyncio
async def test_ban_unban_and_role_changes_are_audited(admin_client):
    client, _ = admin_client

    ban = await client.post(
        "/admin/accounts/manage",
        json={"action": "ban", "target_account_id": TARGET_ID, "data": {"reason": "chargeback abuse"}},
        headers=ADMIN_AUTH_HEADER,
    )
    assert ban.status_code == 200
    assert ban.json()["success"] is True

    blocked = await client.post(
        "/operations/text-to-image",
        json={"prompt": "a cat"},
        headers=TARGET_AUTH_HEADER,
    )
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "account_suspended"

    unban = await client.post(
        "/admin/accounts/manage",
        json={"action": "unban", "target_account_id": TARGET_ID},
        headers=ADMIN_AUTH_HEADER,
    )
    assert unban.status_code == 200

    bad_role = await client.post(
        "/admin/accounts/manage",
        json={"action": "update_role", "target_account_id": TARGET_ID, "data": {"role": "owner"}},
        headers=ADMIN_AUTH_HEADER,
    )
    assert bad_role.status_code == 400
    assert bad_role.json()["code"] == "invalid_admin_request"

    promote = await client.post(
        "/admin/accounts/manage",
        json={"action": "update_role", "target_account_id": TARGET_ID, "data": {"role": "admin"}},
        headers=ADMIN_AUTH_HEADER,
    )
    assert promote.status_code == 200
    assert promote.json()["details"] == {"previous_role": "user", "new_role": "admin"}

    log_resp = await client.get(f"/admin/audit-log?target_account_id={TARGET_ID}", headers=ADMIN_AUTH_HEADER)
    assert log_resp.status_code == 200
    actions = [entry["action"] for entry in log_resp.json()["entries"]]
    assert sorted(actions) == ["ban", "unban", "update_role"]
    assert all(entry["admin_id"] == ADMIN_ID for entry in log_resp.json()["entries"])


@pytest.mark.asyncio
async def test_admin_account_detail_and_ledger_verification(admin_client):
    client, _ = admin_client

    detail = await client.get(f"/admin/accounts/{TARGET_ID}", headers=ADMIN_AUTH_HEADER)
    assert detail.status_code == 200
    assert detail.json()["account"]["credits"] == 10
    assert detail.json()["ledger"]["recent_entries"][0]["kind"] == "signup_grant"

    verify = await client.get(f"/admin/accounts/{TARGET_ID}/ledger/verify", headers=ADMIN_AUTH_HEADER)
    assert verify.status_code == 200
    assert verify.json() == {
        "account_id": TARGET_ID,
        "credits": 10,
        "ledger_sum": 10,
        "entry_count": 1,
        "consistent": True,
    }

    missing = await client.get("/admin/accounts/nobody", headers=ADMIN_AUTH_HEADER)
    assert missing.status_code == 404
