"""Reconciliation sweep: find completed calls with no usage entry and bill them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.call_record import CallRecord
from models.usage_log import CreditUsageLog
from services.credit_processor import CALL_USAGE_TYPE, BillableCall, process_call_credits
from services.ledger_errors import TransientError
from services.notifications import NotificationSink

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    processed: int = 0
    errors: int = 0
    already_processed: int = 0
    credits_deducted: Decimal = Decimal("0")
    error_details: List[str] = field(default_factory=list)

    def merge(self, other: "ReconciliationSummary") -> None:
        self.processed += other.processed
        self.errors += other.errors
        self.already_processed += other.already_processed
        self.credits_deducted += other.credits_deducted
        self.error_details.extend(other.error_details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "already_processed": self.already_processed,
            "credits_deducted": float(self.credits_deducted),
            "error_details": self.error_details[:20],
        }


def _unbilled_calls_query():
    billed = (
        select(CreditUsageLog.id)
        .where(
            CreditUsageLog.user_id == CallRecord.user_id,
            CreditUsageLog.usage_type == CALL_USAGE_TYPE,
            CreditUsageLog.reference_id == CallRecord.id,
        )
        .exists()
    )
    return select(CallRecord).where(
        CallRecord.status == "completed",
        CallRecord.duration_seconds > 0,
        ~billed,
    )


async def find_unbilled_calls(
    user_id: str,
    db: AsyncSession,
    limit: Optional[int] = None,
    after_id: Optional[str] = None,
) -> List[BillableCall]:
    """Completed calls with a duration and no matching call usage entry.

    Ordered by call id; pass the last id of a page as ``after_id`` for the next page.
    """
    query = _unbilled_calls_query().where(CallRecord.user_id == user_id)
    if after_id is not None:
        query = query.where(CallRecord.id > after_id)
    query = query.order_by(CallRecord.id.asc())
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return [BillableCall.from_record(record) for record in result.scalars().all()]


async def find_tenants_with_unbilled_calls(db: AsyncSession) -> List[str]:
    result = await db.execute(_unbilled_calls_query().with_only_columns(CallRecord.user_id).distinct())
    return [str(user_id) for user_id in result.scalars().all() if user_id]


async def process_unprocessed_calls(
    user_id: str,
    db: AsyncSession,
    *,
    sink: Optional[NotificationSink] = None,
) -> ReconciliationSummary:
    """Replay the credit processor over every unbilled call of a tenant.

    Per-call outcome notifications are not sent; only the processor's own
    low-balance warning can fire. Safe to run concurrently with the call watcher.
    Candidates are read in pages of ``RECONCILE_BATCH_LIMIT`` until none remain.
    """
    summary = ReconciliationSummary()
    page_size = max(int(settings.RECONCILE_BATCH_LIMIT), 1)
    candidates = 0
    after_id: Optional[str] = None

    while True:
        page = await find_unbilled_calls(user_id, db, limit=page_size, after_id=after_id)
        if not page:
            break
        candidates += len(page)
        after_id = page[-1].id
        for call in page:
            await _reconcile_call(call, user_id, db, summary, sink)

    if candidates:
        logger.info(
            "reconciliation user=%s candidates=%s processed=%s errors=%s already_processed=%s",
            user_id,
            candidates,
            summary.processed,
            summary.errors,
            summary.already_processed,
        )
    return summary


async def _reconcile_call(
    call: BillableCall,
    user_id: str,
    db: AsyncSession,
    summary: ReconciliationSummary,
    sink: Optional[NotificationSink],
) -> None:
    try:
        result = await process_call_credits(call, db, tenant_id=user_id, sink=sink)
    except TransientError as exc:
        summary.errors += 1
        summary.error_details.append(f"{call.id}:{exc.code}")
        logger.warning("Reconciliation transient failure on call %s: %s", call.id, exc.message)
        return
    except Exception as exc:
        await db.rollback()
        summary.errors += 1
        summary.error_details.append(f"{call.id}:unexpected")
        logger.exception("Reconciliation failed on call %s: %s", call.id, exc)
        return

    if result.ok:
        summary.processed += 1
        summary.credits_deducted += result.credits_deducted
    elif result.already_processed:
        summary.already_processed += 1
    else:
        summary.errors += 1
        summary.error_details.append(f"{call.id}:{result.error.code}")


async def run_reconciliation_for_all_tenants(
    session_maker: Optional[async_sessionmaker] = None,
    sink: Optional[NotificationSink] = None,
) -> Dict[str, Any]:
    """Sweep every tenant that has unbilled calls, each in its own session."""
    maker = session_maker or async_session_maker
    async with maker() as db:
        tenants = await find_tenants_with_unbilled_calls(db)

    total = ReconciliationSummary()
    for tenant_id in tenants:
        async with maker() as db:
            total.merge(await process_unprocessed_calls(tenant_id, db, sink=sink))

    payload = total.to_dict()
    payload["tenants"] = len(tenants)
    return payload


class ReconciliationSweeper:
    """Periodic background sweep, cancellable on shutdown."""

    def __init__(
        self,
        interval_minutes: Optional[float] = None,
        *,
        session_maker: Optional[async_sessionmaker] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self._interval_seconds = max(
            float(settings.RECONCILE_INTERVAL_MINUTES if interval_minutes is None else interval_minutes) * 60,
            0.0,
        )
        self._session_maker = session_maker
        self._sink = sink
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self._interval_seconds > 0

    async def run_once(self) -> Dict[str, Any]:
        return await run_reconciliation_for_all_tenants(self._session_maker, self._sink)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                result = await self.run_once()
                if result.get("processed") or result.get("errors"):
                    logger.info(
                        "Reconciliation tick: tenants=%s processed=%s errors=%s",
                        result.get("tenants", 0),
                        result.get("processed", 0),
                        result.get("errors", 0),
                    )
            except Exception as exc:
                logger.warning("Reconciliation tick failed: %s", exc)

    def start(self) -> None:
        if self.enabled and self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
