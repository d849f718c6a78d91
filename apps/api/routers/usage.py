"""Usage router: read-only ledger projections."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.usage_log import USAGE_TYPES
from routers.deps import TenantContext, ensure_tenant_scope, get_tenant
from services.usage import (
    get_total_minutes_used,
    get_total_usage_by_type,
    get_usage_statistics,
    list_usage_logs,
    usage_log_to_dict,
)

router = APIRouter()


@router.get("/logs")
async def usage_logs(
    user_id: Optional[str] = Query(default=None),
    usage_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    if usage_type and usage_type not in USAGE_TYPES:
        raise HTTPException(status_code=422, detail=f"usage_type must be one of {', '.join(USAGE_TYPES)}.")
    logs = await list_usage_logs(scoped_user_id, db, usage_type=usage_type, limit=limit)
    return {"logs": [usage_log_to_dict(entry) for entry in logs]}


@router.get("/totals")
async def usage_totals(
    user_id: Optional[str] = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    by_type = await get_total_usage_by_type(scoped_user_id, db)
    return {
        "by_type": by_type,
        "total_call_credits": by_type.get("call", 0.0),
        "total_minutes_used": await get_total_minutes_used(scoped_user_id, db),
    }


@router.get("/statistics")
async def usage_statistics(
    start: datetime,
    end: datetime,
    user_id: Optional[str] = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    if end < start:
        raise HTTPException(status_code=422, detail="end must not be before start.")
    return await get_usage_statistics(scoped_user_id, db, start, end)
