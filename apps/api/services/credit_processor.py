"""Convert completed calls into metered credit deductions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.call_record import CallRecord
from services.ledger_errors import (
    AlreadyProcessedError,
    CreditResult,
    InsufficientCreditsError,
    TenantPermissionError,
    ValidationError,
)
from services.ledger_store import apply_usage_debit
from services.notifications import NotificationSink, warn_if_low_balance

logger = logging.getLogger(__name__)

CALL_USAGE_TYPE = "call"
ONGOING_STATUSES = ("pending", "in_progress")


@dataclass
class BillableCall:
    """The fields of a call record the ledger reads."""

    id: str
    user_id: str
    status: Optional[str]
    duration_seconds: Optional[int]
    completed_at: Optional[datetime] = None
    cost_breakdown: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: CallRecord) -> "BillableCall":
        return cls(
            id=str(record.id),
            user_id=str(record.user_id),
            status=record.status,
            duration_seconds=record.duration_seconds,
            completed_at=record.completed_at,
            cost_breakdown=dict(record.cost_breakdown or {}),
        )


def credits_for_duration(duration_seconds: int) -> Decimal:
    """One credit per started minute."""
    seconds_per_credit = max(int(settings.SECONDS_PER_CREDIT), 1)
    return Decimal(math.ceil(int(duration_seconds) / seconds_per_credit))


def minutes_for_duration(duration_seconds: int) -> Decimal:
    return (Decimal(int(duration_seconds)) / Decimal(60)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def validate_billable(call: BillableCall) -> Optional[ValidationError]:
    status = (call.status or "").lower()
    if status in ONGOING_STATUSES:
        return ValidationError(
            "Call is still pending or in progress - duration not yet available",
            call_id=call.id,
            status=status,
        )
    if status != "completed":
        return ValidationError("Call has not completed", call_id=call.id, status=status or None)
    if not call.duration_seconds or int(call.duration_seconds) <= 0:
        return ValidationError("Call has no billable duration", call_id=call.id)
    return None


async def process_call_credits(
    call: BillableCall,
    db: AsyncSession,
    *,
    tenant_id: Optional[str] = None,
    sink: Optional[NotificationSink] = None,
) -> CreditResult:
    """Bill a completed call exactly once.

    Validation, duplicate billing, insufficient balance and tenant mismatch are
    returned in the result. ``TransientError`` is raised when the ledger store
    cannot complete the mutation; retrying later is safe.
    """
    if tenant_id is not None and call.user_id != tenant_id:
        return CreditResult(
            error=TenantPermissionError("Call does not belong to this tenant", call_id=call.id)
        )

    invalid = validate_billable(call)
    if invalid is not None:
        logger.info("Skipping call %s: %s", call.id, invalid.message)
        return CreditResult(error=invalid)

    duration = int(call.duration_seconds or 0)
    credits = credits_for_duration(duration)
    try:
        entry = await apply_usage_debit(
            call.user_id,
            db,
            usage_type=CALL_USAGE_TYPE,
            reference_id=call.id,
            amount=credits,
            duration_seconds=duration,
            minutes=minutes_for_duration(duration),
            rate_per_minute=Decimal(1),
            cost_breakdown=call.cost_breakdown,
        )
    except AlreadyProcessedError as exc:
        logger.info("Call %s already billed for user %s", call.id, call.user_id)
        return CreditResult(error=exc)
    except InsufficientCreditsError as exc:
        logger.info("Insufficient credits to bill call %s for user %s: %s", call.id, call.user_id, exc.message)
        return CreditResult(error=exc)

    balance_after = Decimal(entry.balance_after)
    await warn_if_low_balance(call.user_id, balance_after, db, sink)
    return CreditResult(
        credits_deducted=credits,
        balance_after=balance_after,
        usage_log_id=entry.id,
    )


async def load_call(call_id: str, db: AsyncSession) -> Optional[BillableCall]:
    result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
    record = result.scalar_one_or_none()
    return BillableCall.from_record(record) if record else None
