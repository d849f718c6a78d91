import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.usage_log import CreditUsageLog
from services.call_events import CallTransition, InMemoryCallEventFeed
from services.event_watcher import CallEventWatcher
from services.ledger_store import get_balance_snapshot
from services.reconciliation import (
    ReconciliationSweeper,
    find_tenants_with_unbilled_calls,
    find_unbilled_calls,
    process_unprocessed_calls,
    run_reconciliation_for_all_tenants,
)


USER_ID = "tenant-a"
OTHER_USER_ID = "tenant-b"


async def _usage_refs(session, user_id=USER_ID):
    result = await session.execute(
        select(CreditUsageLog.reference_id).where(CreditUsageLog.user_id == user_id).order_by(CreditUsageLog.id)
    )
    return sorted(result.scalars().all())


@pytest.mark.asyncio
async def test_sweep_bills_every_unbilled_call_once(db, fund, seed_call, sink):
    await fund(USER_ID, 100)
    await seed_call(USER_ID, "C1", duration_seconds=60)
    await seed_call(USER_ID, "C2", duration_seconds=61)
    await seed_call(USER_ID, "C3", duration_seconds=600)

    summary = await process_unprocessed_calls(USER_ID, db, sink=sink)

    assert summary.processed == 3
    assert summary.errors == 0
    assert summary.credits_deducted == Decimal(13)
    assert await _usage_refs(db) == ["C1", "C2", "C3"]
    assert (await get_balance_snapshot(USER_ID, db)).remaining_credits == Decimal(87)
    assert sink.of_kind("credits_deducted") == []

    rerun = await process_unprocessed_calls(USER_ID, db, sink=sink)
    assert rerun.processed == 0
    assert rerun.errors == 0
    assert (await get_balance_snapshot(USER_ID, db)).remaining_credits == Decimal(87)


@pytest.mark.asyncio
async def test_sweep_skips_non_candidates(db, fund, seed_call):
    await fund(USER_ID, 100)
    await seed_call(USER_ID, "done", duration_seconds=30)
    await seed_call(USER_ID, "live", duration_seconds=None, status="in_progress")
    await seed_call(USER_ID, "waiting", duration_seconds=None, status="pending")
    await seed_call(USER_ID, "failed", duration_seconds=12, status="failed")
    await seed_call(USER_ID, "empty", duration_seconds=0)

    candidates = await find_unbilled_calls(USER_ID, db)
    assert [call.id for call in candidates] == ["done"]

    summary = await process_unprocessed_calls(USER_ID, db)
    assert summary.processed == 1
    assert await _usage_refs(db) == ["done"]


@pytest.mark.asyncio
async def test_sweep_counts_insufficient_balance_as_errors(db, fund, seed_call):
    await fund(USER_ID, 3)
    await seed_call(USER_ID, "small", duration_seconds=100)
    await seed_call(USER_ID, "large", duration_seconds=600)

    summary = await process_unprocessed_calls(USER_ID, db)

    assert summary.processed == 1
    assert summary.errors == 1
    assert summary.error_details == ["large:insufficient_credits"]
    assert (await get_balance_snapshot(USER_ID, db)).remaining_credits == Decimal(1)
    assert [call.id for call in await find_unbilled_calls(USER_ID, db)] == ["large"]


@pytest.mark.asyncio
async def test_sweep_walks_past_batch_limit(db, fund, seed_call):
    await fund(USER_ID, 10)
    # Unaffordable calls sort first and fill the first page.
    await seed_call(USER_ID, "A-big-1", duration_seconds=6000)
    await seed_call(USER_ID, "A-big-2", duration_seconds=6000)
    for call_id in ("B1", "B2", "B3"):
        await seed_call(USER_ID, call_id, duration_seconds=60)

    with patch("services.reconciliation.settings.RECONCILE_BATCH_LIMIT", 2):
        summary = await process_unprocessed_calls(USER_ID, db)

    assert summary.processed == 3
    assert summary.errors == 2
    assert await _usage_refs(db) == ["B1", "B2", "B3"]
    assert (await get_balance_snapshot(USER_ID, db)).remaining_credits == Decimal(7)

    with patch("services.reconciliation.settings.RECONCILE_BATCH_LIMIT", 2):
        rerun = await process_unprocessed_calls(USER_ID, db)
    assert rerun.processed == 0
    assert rerun.errors == 2


@pytest.mark.asyncio
async def test_sweep_is_scoped_to_tenant(db, fund, seed_call):
    await fund(USER_ID, 10)
    await fund(OTHER_USER_ID, 10)
    await seed_call(USER_ID, "mine", duration_seconds=60)
    await seed_call(OTHER_USER_ID, "theirs", duration_seconds=60)

    summary = await process_unprocessed_calls(USER_ID, db)

    assert summary.processed == 1
    assert await _usage_refs(db, OTHER_USER_ID) == []
    assert (await get_balance_snapshot(OTHER_USER_ID, db)).remaining_credits == Decimal(10)
    assert await find_tenants_with_unbilled_calls(db) == [OTHER_USER_ID]


@pytest.mark.asyncio
async def test_sweep_and_watcher_race_bills_once(session_maker, db, fund, seed_call, sink):
    await fund(USER_ID, 30)
    transitions = []
    for index in range(5):
        transitions.append(await seed_call(USER_ID, f"R{index}", duration_seconds=90))

    watcher = CallEventWatcher(InMemoryCallEventFeed(), session_maker=session_maker, sink=sink)

    async def _sweep():
        async with session_maker() as session:
            return await process_unprocessed_calls(USER_ID, session, sink=sink)

    async def _watch():
        return [await watcher.handle(transition) for transition in transitions]

    summary, watched = await asyncio.gather(_sweep(), _watch())

    watcher_billed = sum(1 for result in watched if result is not None and result.ok)
    assert summary.processed + watcher_billed == 5
    async with session_maker() as fresh:
        assert await _usage_refs(fresh) == [f"R{index}" for index in range(5)]
        assert (await get_balance_snapshot(USER_ID, fresh)).remaining_credits == Decimal(20)


@pytest.mark.asyncio
async def test_run_for_all_tenants_sweeps_each_tenant(session_maker, fund, seed_call, sink):
    await fund(USER_ID, 10)
    await fund(OTHER_USER_ID, 10)
    await seed_call(USER_ID, "A1", duration_seconds=60)
    await seed_call(USER_ID, "A2", duration_seconds=120)
    await seed_call(OTHER_USER_ID, "B1", duration_seconds=180)

    result = await run_reconciliation_for_all_tenants(session_maker, sink)

    assert result["tenants"] == 2
    assert result["processed"] == 3
    assert result["errors"] == 0
    assert result["credits_deducted"] == 6.0

    again = await run_reconciliation_for_all_tenants(session_maker, sink)
    assert again["tenants"] == 0
    assert again["processed"] == 0


@pytest.mark.asyncio
async def test_sweeper_loop_heals_missed_completions(session_maker, fund, seed_call, sink):
    await fund(USER_ID, 10)
    # Published with no feed attached: the watcher never hears about it.
    await seed_call(USER_ID, "missed", duration_seconds=45)

    sweeper = ReconciliationSweeper(interval_minutes=0.0005, session_maker=session_maker, sink=sink)
    assert sweeper.enabled
    sweeper.start()
    try:
        for _ in range(100):
            async with session_maker() as session:
                if await _usage_refs(session) == ["missed"]:
                    break
            await asyncio.sleep(0.05)
    finally:
        await sweeper.stop()

    async with session_maker() as session:
        assert await _usage_refs(session) == ["missed"]
        assert (await get_balance_snapshot(USER_ID, session)).remaining_credits == Decimal(9)


def test_sweeper_disabled_with_zero_interval():
    sweeper = ReconciliationSweeper(interval_minutes=0)
    assert not sweeper.enabled
    sweeper.start()


@pytest.mark.asyncio
async def test_watcher_builds_call_from_transition_when_record_missing(session_maker, fund, sink):
    await fund(USER_ID, 5)
    watcher = CallEventWatcher(InMemoryCallEventFeed(), session_maker=session_maker, sink=sink)

    result = await watcher.handle(
        CallTransition(call_id="external", user_id=USER_ID, old_status="in_progress", new_status="completed", duration_seconds=30)
    )

    assert result.ok
    assert result.credits_deducted == Decimal(1)
