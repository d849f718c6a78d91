"""Read-only views over the credit ledger."""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.usage_log import CreditUsageLog
from services.ledger_store import get_balance_snapshot


def usage_log_to_dict(entry: CreditUsageLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "usage_type": entry.usage_type,
        "amount_used": float(entry.amount_used),
        "duration_seconds": entry.duration_seconds,
        "reference_id": entry.reference_id,
        "balance_before": float(entry.balance_before) if entry.balance_before is not None else None,
        "balance_after": float(entry.balance_after) if entry.balance_after is not None else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def get_balance_status(balance: Decimal) -> Dict[str, str]:
    if balance >= 20:
        return {"status": "healthy", "message": "Your balance is healthy"}
    if balance >= 10:
        return {"status": "low", "message": "Consider adding more credits soon"}
    if balance >= 5:
        return {"status": "low", "message": "Your balance is getting low"}
    return {"status": "critical", "message": "Critical: Please add credits immediately"}


async def list_usage_logs(
    user_id: str,
    db: AsyncSession,
    *,
    usage_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[CreditUsageLog]:
    query = select(CreditUsageLog).where(CreditUsageLog.user_id == user_id)
    if usage_type:
        query = query.where(CreditUsageLog.usage_type == usage_type)
    if start is not None:
        query = query.where(CreditUsageLog.created_at >= start)
    if end is not None:
        query = query.where(CreditUsageLog.created_at <= end)
    result = await db.execute(query.order_by(CreditUsageLog.created_at.desc(), CreditUsageLog.id.desc()).limit(limit))
    return list(result.scalars().all())


async def get_total_usage_by_type(user_id: str, db: AsyncSession) -> Dict[str, float]:
    result = await db.execute(
        select(CreditUsageLog.usage_type, func.coalesce(func.sum(CreditUsageLog.amount_used), 0))
        .where(CreditUsageLog.user_id == user_id)
        .group_by(CreditUsageLog.usage_type)
    )
    totals = {"call": 0.0, "email": 0.0, "other": 0.0}
    for usage_type, total in result.all():
        totals[str(usage_type)] = float(total or 0)
    return totals


async def get_total_minutes_used(user_id: str, db: AsyncSession) -> float:
    """Exact minutes of billed call time (not the rounded-up credits)."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditUsageLog.duration_seconds), 0)).where(
            CreditUsageLog.user_id == user_id,
            CreditUsageLog.usage_type == "call",
        )
    )
    return round(int(result.scalar() or 0) / 60, 2)


async def get_usage_statistics(user_id: str, db: AsyncSession, start: datetime, end: datetime) -> Dict[str, Any]:
    logs = await list_usage_logs(user_id, db, start=start, end=end, limit=10000)
    total_used = sum((Decimal(entry.amount_used) for entry in logs), Decimal("0"))
    call_logs = [entry for entry in logs if entry.usage_type == "call"]
    total_seconds = sum(int(entry.duration_seconds or 0) for entry in call_logs)
    total_calls = len(call_logs)
    call_credits = sum((Decimal(entry.amount_used) for entry in call_logs), Decimal("0"))
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_used": float(total_used),
        "total_minutes": round(total_seconds / 60, 2),
        "total_calls": total_calls,
        "average_cost_per_call": float(call_credits / total_calls) if total_calls else 0.0,
        "logs": [usage_log_to_dict(entry) for entry in logs],
    }


async def get_balance_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    snapshot = await get_balance_snapshot(user_id, db)
    payload = snapshot.to_dict()
    payload["estimated_minutes_remaining"] = math.floor(snapshot.remaining_credits)
    payload.update(get_balance_status(snapshot.remaining_credits))
    return payload
