"""Call billing router: manual processing, reconciliation and status intake."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.deps import (
    TenantContext,
    ensure_tenant_scope,
    get_call_feed,
    get_sink,
    get_tenant,
    raise_for_credit_error,
    rate_limit,
)
from services.call_events import CallEventFeed
from services.calls import apply_call_status
from services.credit_processor import load_call, process_call_credits
from services.ledger_errors import CreditError, TransientError
from services.notifications import NotificationSink
from services.reconciliation import process_unprocessed_calls
from services.reconciliation_queue import enqueue_reconciliation_job

router = APIRouter()
logger = logging.getLogger(__name__)


class CallStatusEvent(BaseModel):
    call_id: str
    status: str
    user_id: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    completed_at: Optional[datetime] = None
    cost_breakdown: Optional[Dict[str, Any]] = None
    bot_id: Optional[str] = None
    phone_number: Optional[str] = None


@router.post("/events")
async def ingest_call_status(
    event: CallStatusEvent,
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    feed: Optional[CallEventFeed] = Depends(get_call_feed),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, event.user_id)
    try:
        transition = await apply_call_status(
            scoped_user_id,
            db,
            call_id=event.call_id,
            status=event.status,
            duration_seconds=event.duration_seconds,
            completed_at=event.completed_at,
            cost_breakdown=event.cost_breakdown,
            bot_id=event.bot_id,
            phone_number=event.phone_number,
            feed=feed,
        )
    except CreditError as exc:
        raise_for_credit_error(exc)
    return {
        "call_id": transition.call_id,
        "old_status": transition.old_status,
        "new_status": transition.new_status,
        "duration_seconds": transition.duration_seconds,
        "published": feed is not None,
    }


@router.post("/reconcile")
async def reconcile_calls(
    user_id: Optional[str] = Query(default=None),
    queued: bool = Query(default=False),
    _rate_limit: None = Depends(rate_limit("calls_reconcile", limit=30, window_seconds=3600)),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_sink),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    if queued:
        try:
            job = enqueue_reconciliation_job(scoped_user_id)
        except Exception as exc:
            logger.warning("Reconciliation queue unavailable for user %s: %s", scoped_user_id, exc)
            raise HTTPException(status_code=503, detail="Reconciliation queue unavailable.") from exc
        return {"queued": True, "job_id": job.id}

    summary = await process_unprocessed_calls(scoped_user_id, db, sink=sink)
    return summary.to_dict()


@router.post("/{call_id}/process")
async def process_call(
    call_id: str,
    user_id: Optional[str] = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_sink),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    call = await load_call(call_id, db)
    if call is None:
        raise HTTPException(status_code=404, detail="Call not found.")

    try:
        result = await process_call_credits(call, db, tenant_id=scoped_user_id, sink=sink)
    except TransientError as exc:
        raise_for_credit_error(exc)

    if result.error is not None and not result.already_processed:
        raise_for_credit_error(result.error)
    return result.to_dict()
