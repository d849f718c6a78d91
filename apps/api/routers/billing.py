"""Billing router: balance, packages and purchases."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.deps import (
    TenantContext,
    ensure_tenant_scope,
    get_payment_collaborator,
    get_sink,
    get_tenant,
    raise_for_credit_error,
    rate_limit,
)
from services.ledger_errors import CreditError
from services.notifications import NotificationSink
from services.purchases import (
    CREDIT_PACKAGES,
    get_total_credits_purchased,
    get_user_purchases,
    grant_trial_credits,
    purchase_to_dict,
    record_package_purchase,
    record_purchase,
)
from services.usage import get_balance_summary

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1)
    package_id: str
    package_name: str
    credits: Decimal = Field(gt=0, le=1_000_000)
    price: Decimal = Field(ge=0)
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PackagePurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1)
    package_id: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


@router.get("/balance")
async def balance(
    user_id: Optional[str] = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    return await get_balance_summary(scoped_user_id, db)


@router.get("/packages")
async def list_packages():
    return [package.to_dict() for package in CREDIT_PACKAGES]


@router.post("/purchases")
async def create_purchase(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=60, window_seconds=3600)),
    collaborator: str = Depends(get_payment_collaborator),
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_sink),
):
    try:
        purchase = await record_purchase(
            request.user_id,
            db,
            package_id=request.package_id,
            package_name=request.package_name,
            credits=request.credits,
            price=request.price,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
            metadata=request.metadata,
            sink=sink,
        )
    except CreditError as exc:
        raise_for_credit_error(exc)
    logger.info("purchase_recorded user=%s reference=%s by=%s", request.user_id, purchase.payment_reference, collaborator)
    return purchase_to_dict(purchase)


@router.post("/purchases/package")
async def create_package_purchase(
    request: PackagePurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=60, window_seconds=3600)),
    collaborator: str = Depends(get_payment_collaborator),
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_sink),
):
    try:
        purchase = await record_package_purchase(
            request.user_id,
            db,
            package_id=request.package_id,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
            sink=sink,
        )
    except CreditError as exc:
        raise_for_credit_error(exc)
    logger.info("package_purchase user=%s package=%s by=%s", request.user_id, purchase.package_id, collaborator)
    return purchase_to_dict(purchase)


@router.get("/purchases")
async def purchase_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_tenant_scope(tenant.user_id, user_id)
    purchases = await get_user_purchases(scoped_user_id, db, limit=limit)
    return {
        "purchases": [purchase_to_dict(purchase) for purchase in purchases],
        "total_credits_purchased": float(await get_total_credits_purchased(scoped_user_id, db)),
    }


@router.post("/trial")
async def claim_trial(
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_sink),
):
    try:
        purchase = await grant_trial_credits(tenant.user_id, db, sink=sink)
    except CreditError as exc:
        raise_for_credit_error(exc)
    logger.info("trial_claim user=%s purchase=%s", tenant.user_id, purchase.id)
    return purchase_to_dict(purchase)
