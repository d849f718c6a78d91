"""Intake of call status updates from the call subsystem."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.call_record import CALL_STATUSES, CallRecord
from services.call_events import CallEventFeed, CallTransition
from services.ledger_errors import TenantPermissionError, ValidationError
from services.ledger_store import ensure_account

logger = logging.getLogger(__name__)


async def apply_call_status(
    user_id: str,
    db: AsyncSession,
    *,
    call_id: str,
    status: str,
    duration_seconds: Optional[int] = None,
    completed_at: Optional[datetime] = None,
    cost_breakdown: Optional[Dict[str, Any]] = None,
    bot_id: Optional[str] = None,
    phone_number: Optional[str] = None,
    feed: Optional[CallEventFeed] = None,
) -> CallTransition:
    """Upsert a call record and publish the resulting transition on ``feed``."""
    normalized = (status or "").strip().lower()
    if normalized not in CALL_STATUSES:
        raise ValidationError(f"Unknown call status: {status}", status=status)
    if duration_seconds is not None and int(duration_seconds) < 0:
        raise ValidationError("duration_seconds must not be negative", duration_seconds=duration_seconds)

    result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
    record = result.scalar_one_or_none()
    if record is not None and record.user_id != user_id:
        raise TenantPermissionError("Call does not belong to this tenant", call_id=call_id)

    old_status = record.status if record is not None else None
    if record is None:
        await ensure_account(user_id, db)
        record = CallRecord(id=call_id, user_id=user_id)
        db.add(record)

    record.status = normalized
    if duration_seconds is not None:
        record.duration_seconds = int(duration_seconds)
    if cost_breakdown is not None:
        record.cost_breakdown = cost_breakdown
    if bot_id is not None:
        record.bot_id = bot_id
    if phone_number is not None:
        record.phone_number = phone_number
    if normalized == "in_progress" and record.started_at is None:
        record.started_at = datetime.now(timezone.utc)
    if normalized == "completed":
        record.completed_at = completed_at or record.completed_at or datetime.now(timezone.utc)
    await db.commit()

    transition = CallTransition(
        call_id=call_id,
        user_id=user_id,
        old_status=old_status,
        new_status=normalized,
        duration_seconds=record.duration_seconds,
        completed_at=record.completed_at,
    )
    if feed is not None:
        await feed.publish(transition)
    logger.info("call_status user=%s call=%s %s->%s", user_id, call_id, old_status, normalized)
    return transition
