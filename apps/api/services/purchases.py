"""Credit purchases: catalog, recording and history."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.purchase import Purchase
from services.ledger_errors import ValidationError
from services.ledger_store import apply_purchase_credit
from services.notifications import NotificationSink, notify, purchase_recorded_notice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: Decimal
    currency: str = "USD"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": float(self.price),
            "currency": self.currency,
            "description": self.description,
        }


CREDIT_PACKAGES = [
    CreditPackage(id="free-trial", name="Free Trial", credits=100, price=Decimal("0"), description="100 free credits for new users"),
    CreditPackage(id="starter", name="Starter", credits=500, price=Decimal("19"), description="Perfect for getting started"),
    CreditPackage(id="growth", name="Growth", credits=2000, price=Decimal("49"), description="For growing businesses"),
    CreditPackage(id="pro", name="Pro", credits=5000, price=Decimal("99"), description="For professional teams"),
]


def get_package(package_id: str) -> Optional[CreditPackage]:
    return next((package for package in CREDIT_PACKAGES if package.id == package_id), None)


def purchase_to_dict(purchase: Purchase) -> Dict[str, Any]:
    return {
        "id": purchase.id,
        "user_id": purchase.user_id,
        "package_id": purchase.package_id,
        "package_name": purchase.package_name,
        "credits": float(purchase.credits),
        "price": float(purchase.price),
        "currency": purchase.currency,
        "payment_method": purchase.payment_method,
        "payment_reference": purchase.payment_reference,
        "status": purchase.status,
        "metadata": purchase.metadata_json or {},
        "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
    }


async def record_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    package_id: str,
    package_name: str,
    credits: Decimal,
    price: Decimal,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    sink: Optional[NotificationSink] = None,
) -> Purchase:
    """Record a confirmed payment and add its credits to the balance.

    The payment reference is the idempotency key: recording the same reference
    again returns the original purchase without crediting twice. A reference is
    generated when the payment collaborator supplies none.
    """
    credits = Decimal(str(credits))
    price = Decimal(str(price))
    if credits <= 0:
        raise ValidationError("credits must be greater than 0", credits=float(credits))
    if price < 0:
        raise ValidationError("price must not be negative", price=float(price))

    reference = (payment_reference or "").strip() or f"purchase_{uuid.uuid4().hex}"
    purchase, created = await apply_purchase_credit(
        user_id,
        db,
        payment_reference=reference,
        package_id=package_id,
        package_name=package_name,
        credits=credits,
        price=price,
        currency=settings.DEFAULT_CURRENCY,
        payment_method=payment_method,
        metadata=metadata,
    )
    if created:
        await notify(sink, purchase_recorded_notice(user_id, package_name, credits))
    return purchase


async def record_package_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    package_id: str,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    sink: Optional[NotificationSink] = None,
) -> Purchase:
    package = get_package(package_id)
    if package is None:
        raise ValidationError(f"Unknown credit package: {package_id}", package_id=package_id)
    if package.id == settings.TRIAL_PACKAGE_ID:
        # Trial credits are granted once per tenant through grant_trial_credits.
        raise ValidationError("The trial package cannot be purchased", package_id=package_id)
    return await record_purchase(
        user_id,
        db,
        package_id=package.id,
        package_name=package.name,
        credits=Decimal(package.credits),
        price=package.price,
        payment_method=payment_method,
        payment_reference=payment_reference,
        sink=sink,
    )


async def grant_trial_credits(
    user_id: str,
    db: AsyncSession,
    sink: Optional[NotificationSink] = None,
) -> Purchase:
    """Grant the free trial once per tenant."""
    package = get_package(settings.TRIAL_PACKAGE_ID)
    name = package.name if package else "Free Trial"
    return await record_purchase(
        user_id,
        db,
        package_id=settings.TRIAL_PACKAGE_ID,
        package_name=name,
        credits=Decimal(settings.TRIAL_CREDITS),
        price=Decimal("0"),
        payment_method="trial",
        payment_reference=f"trial:{user_id}",
        sink=sink,
    )


async def get_user_purchases(user_id: str, db: AsyncSession, limit: int = 100) -> List[Purchase]:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.user_id == user_id)
        .order_by(Purchase.created_at.desc(), Purchase.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_total_credits_purchased(user_id: str, db: AsyncSession) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(Purchase.credits), 0)).where(
            Purchase.user_id == user_id,
            Purchase.status == "completed",
        )
    )
    return Decimal(str(result.scalar() or 0))
