import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from models.ledger_entry import (
    KIND_ADMIN_ADJUSTMENT,
    KIND_PURCHASE,
    KIND_SIGNUP_GRANT,
    KIND_SUBSCRIPTION_BONUS,
    KIND_USAGE,
    LedgerEntry,
)
from services.accounts import ensure_account
from services.catalog import seed_default_catalog
from services import ledger
from services.errors import Conflict, InsufficientCredits, NotFound, StoreUnavailable
from services.ledger import get_balance, get_ledger_summary, mutate, verify_ledger


ACCOUNT_ID = "ledger-account"


@pytest_asyncio.fixture
async def ledger_db(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        await seed_default_catalog(session)
        await ensure_account(ACCOUNT_ID, session, email="ledger@example.com")

    yield session_maker
    await engine.dispose()


@pytest.mark.asyncio
async def test_signup_grant_is_recorded_as_ledger_entry(ledger_db):
    async with ledger_db() as session:
        assert await get_balance(ACCOUNT_ID, session) == 10
        result = await session.execute(select(LedgerEntry).where(LedgerEntry.account_id == ACCOUNT_ID))
        entries = result.scalars().all()
        assert [entry.kind for entry in entries] == [KIND_SIGNUP_GRANT]
        assert entries[0].balance_after == 10

        # A second contact must not grant again.
        await ensure_account(ACCOUNT_ID, session)
        assert await get_balance(ACCOUNT_ID, session) == 10


@pytest.mark.asyncio
async def test_debit_that_would_overdraw_is_rejected_and_balance_kept(ledger_db):
    async with ledger_db() as session:
        first = await mutate(ACCOUNT_ID, -6, KIND_USAGE, "enhance processing", session)
        assert first.balance_after == 4

        with pytest.raises(InsufficientCredits) as exc_info:
            await mutate(ACCOUNT_ID, -6, KIND_USAGE, "enhance processing", session)
        assert exc_info.value.required == 6
        assert exc_info.value.available == 4
        assert exc_info.value.status_code == 402

        assert await get_balance(ACCOUNT_ID, session) == 4
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["consistent"] is True
        assert report["entry_count"] == 2
        assert report["ledger_sum"] == 4


@pytest.mark.asyncio
async def test_repeated_idempotency_key_returns_original_entry(ledger_db):
    async with ledger_db() as session:
        first = await mutate(ACCOUNT_ID, 5, KIND_PURCHASE, "Credit purchase", session, idempotency_key="purchase:inv_1")
        second = await mutate(ACCOUNT_ID, 5, KIND_PURCHASE, "Credit purchase", session, idempotency_key="purchase:inv_1")

        assert first.id == second.id
        assert await get_balance(ACCOUNT_ID, session) == 15
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["entry_count"] == 2
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_period_key_grants_once_per_billing_cycle(ledger_db):
    async with ledger_db() as session:
        snapshot_grant = await mutate(
            ACCOUNT_ID,
            100,
            KIND_SUBSCRIPTION_BONUS,
            "Subscription bonus",
            session,
            idempotency_key="evt_snapshot",
            period_key="sub_1:1760000000",
        )
        renewal_grant = await mutate(
            ACCOUNT_ID,
            100,
            KIND_SUBSCRIPTION_BONUS,
            "Subscription renewal",
            session,
            idempotency_key="evt_invoice",
            period_key="sub_1:1760000000",
        )

        assert renewal_grant.id == snapshot_grant.id
        assert await get_balance(ACCOUNT_ID, session) == 110


@pytest.mark.asyncio
async def test_mutation_on_missing_account_raises_not_found(ledger_db):
    async with ledger_db() as session:
        with pytest.raises(NotFound):
            await mutate("missing-account", 5, KIND_ADMIN_ADJUSTMENT, "Adjustment", session)
        with pytest.raises(NotFound):
            await get_balance("missing-account", session)


@pytest.mark.asyncio
async def test_unknown_entry_kind_is_rejected(ledger_db):
    async with ledger_db() as session:
        with pytest.raises(ValueError):
            await mutate(ACCOUNT_ID, 5, "gift", "Not a ledger kind", session)
        assert await get_balance(ACCOUNT_ID, session) == 10


@pytest.mark.asyncio
async def test_failing_before_commit_hook_rolls_back_the_whole_unit(ledger_db):
    async def _explode(entry):
        raise RuntimeError("dependent write failed")

    async with ledger_db() as session:
        with pytest.raises(RuntimeError):
            await mutate(ACCOUNT_ID, -3, KIND_USAGE, "enhance processing", session, before_commit=_explode)

        assert await get_balance(ACCOUNT_ID, session) == 10
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["entry_count"] == 1
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(ledger_db):
    cost = 3
    attempts = 7

    async def _debit(index: int) -> bool:
        async with ledger_db() as session:
            try:
                await mutate(ACCOUNT_ID, -cost, KIND_USAGE, f"concurrent debit {index}", session)
            except InsufficientCredits:
                return False
            return True

    outcomes = await asyncio.gather(*[_debit(index) for index in range(attempts)])

    assert sum(outcomes) == 10 // cost
    async with ledger_db() as session:
        assert await get_balance(ACCOUNT_ID, session) == 10 - cost * (10 // cost)
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["consistent"] is True
        assert report["entry_count"] == 1 + 10 // cost


@pytest.mark.asyncio
async def test_ledger_summary_lists_recent_entries_and_costs(ledger_db):
    async with ledger_db() as session:
        await mutate(ACCOUNT_ID, -2, KIND_USAGE, "style_transfer processing", session)
        summary = await get_ledger_summary(ACCOUNT_ID, session, limit=10)

    assert summary["balance"] == 8
    assert summary["costs"]["text_to_image"] == 3
    assert {entry["kind"] for entry in summary["recent_entries"]} == {KIND_USAGE, KIND_SIGNUP_GRANT}
    assert all(entry["balance_after"] >= 0 for entry in summary["recent_entries"])


@pytest.mark.asyncio
async def test_failed_signup_grant_leaves_no_account_behind(ledger_db):
    new_account = "half-provisioned-account"

    async with ledger_db() as session:
        with patch("services.accounts.mutate", side_effect=StoreUnavailable("Ledger store is unavailable.")):
            with pytest.raises(StoreUnavailable):
                await ensure_account(new_account, session)

    async with ledger_db() as session:
        with pytest.raises(NotFound):
            await get_balance(new_account, session)

        account = await ensure_account(new_account, session)
        assert account.credits == 10
        result = await session.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == new_account,
                LedgerEntry.kind == KIND_SIGNUP_GRANT,
            )
        )
        assert len(result.scalars().all()) == 1
        report = await verify_ledger(new_account, session)
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_unreachable_store_surfaces_as_store_unavailable(ledger_db):
    refused = OperationalError("UPDATE accounts", {}, Exception("connection refused"))

    async with ledger_db() as session:
        with patch.object(session, "execute", new=AsyncMock(side_effect=refused)):
            with pytest.raises(StoreUnavailable) as exc_info:
                await mutate(ACCOUNT_ID, -3, KIND_USAGE, "enhance processing", session)
        assert exc_info.value.status_code == 503

        assert await get_balance(ACCOUNT_ID, session) == 10


@pytest.mark.asyncio
async def test_lock_contention_at_commit_surfaces_as_conflict(ledger_db):
    locked = OperationalError("COMMIT", {}, Exception("database is locked"))

    async with ledger_db() as session:
        with patch.object(session, "commit", new=AsyncMock(side_effect=locked)):
            with pytest.raises(Conflict) as exc_info:
                await mutate(ACCOUNT_ID, -3, KIND_USAGE, "enhance processing", session)
        assert exc_info.value.status_code == 409

        assert await get_balance(ACCOUNT_ID, session) == 10
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["entry_count"] == 1
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_losing_an_idempotency_race_returns_the_committed_entry(ledger_db):
    async with ledger_db() as session:
        winner = await mutate(ACCOUNT_ID, 5, KIND_PURCHASE, "Credit purchase", session, idempotency_key="purchase:inv_race")
        winner_id = winner.id

    real_find = ledger._find_existing_entry
    lookups = {"count": 0}

    async def _find_after_race(*args, **kwargs):
        # The first lookup runs before the other writer commits.
        lookups["count"] += 1
        if lookups["count"] == 1:
            return None
        return await real_find(*args, **kwargs)

    async with ledger_db() as session:
        with patch("services.ledger._find_existing_entry", new=_find_after_race):
            loser = await mutate(
                ACCOUNT_ID, 5, KIND_PURCHASE, "Credit purchase", session, idempotency_key="purchase:inv_race"
            )
        assert loser.id == winner_id

        assert await get_balance(ACCOUNT_ID, session) == 15
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["entry_count"] == 2
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_concurrent_requests_with_one_idempotency_key_apply_once(ledger_db):
    async def _purchase() -> str:
        async with ledger_db() as session:
            entry = await mutate(
                ACCOUNT_ID, 7, KIND_PURCHASE, "Credit purchase", session, idempotency_key="purchase:inv_dup"
            )
            return entry.id

    entry_ids = await asyncio.gather(*[_purchase() for _ in range(4)])

    assert len(set(entry_ids)) == 1
    async with ledger_db() as session:
        assert await get_balance(ACCOUNT_ID, session) == 17
        report = await verify_ledger(ACCOUNT_ID, session)
        assert report["entry_count"] == 2
        assert report["consistent"] is True
