from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.credit_processor import load_call, process_call_credits
from services.ledger_store import apply_usage_debit, get_balance_snapshot
from services.usage import (
    get_balance_status,
    get_balance_summary,
    get_total_minutes_used,
    get_total_usage_by_type,
    get_usage_statistics,
    list_usage_logs,
)


USER_ID = "tenant-a"


async def _bill(db, seed_call, call_id, seconds):
    await seed_call(USER_ID, call_id, duration_seconds=seconds)
    return await process_call_credits(await load_call(call_id, db), db)


@pytest.mark.asyncio
async def test_unknown_tenant_reads_zeros(db):
    snapshot = await get_balance_snapshot("nobody", db)
    assert snapshot.remaining_credits == Decimal(0)
    assert snapshot.total_credits_purchased == Decimal(0)

    summary = await get_balance_summary("nobody", db)
    assert summary["remaining_credits"] == 0.0
    assert summary["estimated_minutes_remaining"] == 0
    assert summary["status"] == "critical"

    assert await get_total_usage_by_type("nobody", db) == {"call": 0.0, "email": 0.0, "other": 0.0}
    assert await get_total_minutes_used("nobody", db) == 0
    assert await list_usage_logs("nobody", db) == []


@pytest.mark.asyncio
async def test_totals_by_type_and_minutes(db, fund, seed_call):
    await fund(USER_ID, 50)
    await _bill(db, seed_call, "C1", 125)
    await _bill(db, seed_call, "C2", 30)
    await apply_usage_debit(USER_ID, db, usage_type="email", reference_id="E1", amount=Decimal("0.5"))

    totals = await get_total_usage_by_type(USER_ID, db)
    assert totals == {"call": 4.0, "email": 0.5, "other": 0.0}
    # Exact minutes, not the rounded-up credits.
    assert await get_total_minutes_used(USER_ID, db) == 2.58

    calls_only = await list_usage_logs(USER_ID, db, usage_type="call")
    assert sorted(entry.reference_id for entry in calls_only) == ["C1", "C2"]

    summary = await get_balance_summary(USER_ID, db)
    assert summary["remaining_credits"] == 45.5
    assert summary["estimated_minutes_remaining"] == 45
    assert summary["status"] == "healthy"


@pytest.mark.asyncio
async def test_statistics_for_date_range(db, fund, seed_call):
    await fund(USER_ID, 50)
    await _bill(db, seed_call, "C1", 60)
    await _bill(db, seed_call, "C2", 150)

    now = datetime.now(timezone.utc)
    stats = await get_usage_statistics(USER_ID, db, now - timedelta(days=1), now + timedelta(days=1))
    assert stats["total_calls"] == 2
    assert stats["total_used"] == 4.0
    assert stats["total_minutes"] == 3.5
    assert stats["average_cost_per_call"] == 2.0
    assert len(stats["logs"]) == 2

    past = await get_usage_statistics(USER_ID, db, now - timedelta(days=10), now - timedelta(days=5))
    assert past["total_calls"] == 0
    assert past["average_cost_per_call"] == 0.0


@pytest.mark.parametrize(
    "balance,status",
    [(Decimal(25), "healthy"), (Decimal(20), "healthy"), (Decimal(12), "low"), (Decimal(5), "low"), (Decimal("4.99"), "critical")],
)
def test_balance_status_bands(balance, status):
    assert get_balance_status(balance)["status"] == status
