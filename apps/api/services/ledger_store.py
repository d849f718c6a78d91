"""Ledger store: atomic balance mutations and raw ledger reads.

Every write to ``account_balances`` goes through :func:`apply_usage_debit` or
:func:`apply_purchase_credit`. Each one runs as a single transaction whose
idempotency is enforced by a unique constraint on the reference key, and whose
balance change is a conditional ``UPDATE`` so the balance can never go negative.
Conflicts, timeouts and connection faults are retried with backoff and surface as
:class:`TransientError` once attempts are exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account_balance import AccountBalance
from models.purchase import Purchase
from models.usage_log import CreditUsageLog
from models.user import User
from services.ledger_errors import (
    AlreadyProcessedError,
    CreditError,
    InsufficientCreditsError,
    TransientError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ZERO = Decimal("0")


@dataclass
class BalanceSnapshot:
    user_id: str
    total_credits_purchased: Decimal = ZERO
    total_credits_used: Decimal = ZERO
    remaining_credits: Decimal = ZERO
    total_minutes_used: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_credits_purchased": float(self.total_credits_purchased),
            "total_credits_used": float(self.total_credits_used),
            "remaining_credits": float(self.remaining_credits),
            "total_minutes_used": float(self.total_minutes_used),
        }


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


async def get_balance_snapshot(user_id: str, db: AsyncSession) -> BalanceSnapshot:
    """Read the balance aggregate. Tenants without a row read as all zeros."""
    result = await db.execute(
        select(
            AccountBalance.total_credits_purchased,
            AccountBalance.total_credits_used,
            AccountBalance.remaining_credits,
            AccountBalance.total_minutes_used,
        ).where(AccountBalance.user_id == user_id)
    )
    row = result.first()
    if row is None:
        return BalanceSnapshot(user_id=user_id)
    return BalanceSnapshot(
        user_id=user_id,
        total_credits_purchased=_as_decimal(row[0]),
        total_credits_used=_as_decimal(row[1]),
        remaining_credits=_as_decimal(row[2]),
        total_minutes_used=_as_decimal(row[3]),
    )


async def find_usage_entry(
    user_id: str,
    db: AsyncSession,
    *,
    usage_type: str,
    reference_id: str,
) -> Optional[CreditUsageLog]:
    result = await db.execute(
        select(CreditUsageLog).where(
            CreditUsageLog.user_id == user_id,
            CreditUsageLog.usage_type == usage_type,
            CreditUsageLog.reference_id == reference_id,
        )
    )
    return result.scalar_one_or_none()


async def find_purchase(user_id: str, db: AsyncSession, *, payment_reference: str) -> Optional[Purchase]:
    result = await db.execute(
        select(Purchase).where(
            Purchase.user_id == user_id,
            Purchase.payment_reference == payment_reference,
        )
    )
    return result.scalar_one_or_none()


async def ensure_account(user_id: str, db: AsyncSession) -> None:
    """Create the user and zero balance rows for a new tenant. Flushes, does not commit."""
    existing_balance = await db.execute(select(AccountBalance.user_id).where(AccountBalance.user_id == user_id))
    if existing_balance.scalar_one_or_none() is not None:
        return

    existing_user = await db.execute(select(User.id).where(User.id == user_id))
    if existing_user.scalar_one_or_none() is None:
        db.add(User(id=user_id, email=f"{user_id}@local.invalid"))
    db.add(
        AccountBalance(
            user_id=user_id,
            total_credits_purchased=ZERO,
            total_credits_used=ZERO,
            remaining_credits=ZERO,
            total_minutes_used=ZERO,
        )
    )
    await db.flush()


async def _remaining_credits(user_id: str, db: AsyncSession) -> Decimal:
    result = await db.execute(select(AccountBalance.remaining_credits).where(AccountBalance.user_id == user_id))
    return _as_decimal(result.scalar_one_or_none())


async def run_ledger_mutation(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    on_conflict: Optional[Callable[[], Awaitable[Optional[T]]]] = None,
) -> T:
    """Run ``operation`` as one transaction with timeout and bounded retries.

    Business outcomes raised as :class:`CreditError` roll back and propagate
    unchanged. ``on_conflict`` is consulted after a unique-constraint violation
    and may resolve it (e.g. by returning the row that won the race); otherwise
    the attempt is retried.
    """
    attempts = max(int(settings.LEDGER_MUTATION_MAX_ATTEMPTS), 1)
    timeout = float(settings.LEDGER_MUTATION_TIMEOUT_SECONDS)
    backoff = max(float(settings.LEDGER_MUTATION_BACKOFF_SECONDS), 0.0)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except CreditError:
            await db.rollback()
            raise
        except IntegrityError as exc:
            await db.rollback()
            last_error = exc
            if on_conflict is not None:
                resolved = await on_conflict()
                if resolved is not None:
                    return resolved
            logger.warning("Ledger conflict during %s (attempt %s/%s): %s", description, attempt, attempts, exc.orig)
        except asyncio.TimeoutError as exc:
            await db.rollback()
            last_error = exc
            logger.warning("Ledger mutation %s timed out after %.1fs (attempt %s/%s)", description, timeout, attempt, attempts)
        except DBAPIError as exc:
            await db.rollback()
            last_error = exc
            logger.warning("Ledger store error during %s (attempt %s/%s): %s", description, attempt, attempts, exc)

        if attempt < attempts and backoff:
            await asyncio.sleep(backoff * (2 ** (attempt - 1)))

    raise TransientError(
        f"Ledger mutation failed after {attempts} attempts: {description}",
        cause=str(last_error) if last_error else None,
    )


async def apply_usage_debit(
    user_id: str,
    db: AsyncSession,
    *,
    usage_type: str,
    reference_id: str,
    amount: Decimal,
    duration_seconds: Optional[int] = None,
    minutes: Decimal = ZERO,
    rate_per_minute: Optional[Decimal] = None,
    cost_breakdown: Optional[Dict[str, Any]] = None,
) -> CreditUsageLog:
    """Insert a usage entry and debit the balance in one transaction.

    Raises :class:`AlreadyProcessedError` when an entry for the reference exists
    and :class:`InsufficientCreditsError` when the balance cannot cover ``amount``;
    neither case writes anything.
    """
    amount = _as_decimal(amount)
    minutes = _as_decimal(minutes)

    async def _already_processed() -> AlreadyProcessedError:
        existing = await find_usage_entry(user_id, db, usage_type=usage_type, reference_id=reference_id)
        return AlreadyProcessedError(
            "Credits already processed for this reference",
            reference_id=reference_id,
            usage_log_id=existing.id if existing else None,
            credits_deducted=float(_as_decimal(existing.amount_used)) if existing else None,
        )

    async def _debit() -> CreditUsageLog:
        existing = await find_usage_entry(user_id, db, usage_type=usage_type, reference_id=reference_id)
        if existing is not None:
            raise await _already_processed()

        available = await _remaining_credits(user_id, db)
        if available < amount:
            raise InsufficientCreditsError(
                f"Insufficient credits. Required: {amount}, available: {available}.",
                required=float(amount),
                available=float(available),
            )

        entry = CreditUsageLog(
            user_id=user_id,
            usage_type=usage_type,
            amount_used=amount,
            duration_seconds=duration_seconds,
            reference_id=reference_id,
            rate_per_minute=rate_per_minute,
            cost_breakdown=cost_breakdown or {},
        )
        db.add(entry)
        await db.flush()

        result = await db.execute(
            update(AccountBalance)
            .where(
                AccountBalance.user_id == user_id,
                AccountBalance.remaining_credits >= amount,
            )
            .values(
                remaining_credits=AccountBalance.remaining_credits - amount,
                total_credits_used=AccountBalance.total_credits_used + amount,
                total_minutes_used=AccountBalance.total_minutes_used + minutes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another debit drained the balance between the read and the write.
            current = await _remaining_credits(user_id, db)
            raise InsufficientCreditsError(
                f"Insufficient credits. Required: {amount}, available: {current}.",
                required=float(amount),
                available=float(current),
            )

        balance_after = await _remaining_credits(user_id, db)
        entry.balance_after = balance_after
        entry.balance_before = balance_after + amount
        await db.commit()
        return entry

    async def _on_conflict() -> Optional[CreditUsageLog]:
        if await find_usage_entry(user_id, db, usage_type=usage_type, reference_id=reference_id) is not None:
            raise await _already_processed()
        return None

    entry = await run_ledger_mutation(
        db,
        _debit,
        description=f"debit {usage_type}:{reference_id}",
        on_conflict=_on_conflict,
    )
    logger.info(
        "ledger_debit user=%s type=%s reference=%s amount=%s balance_after=%s",
        user_id,
        usage_type,
        reference_id,
        amount,
        entry.balance_after,
    )
    return entry


async def apply_purchase_credit(
    user_id: str,
    db: AsyncSession,
    *,
    payment_reference: str,
    package_id: str,
    package_name: str,
    credits: Decimal,
    price: Decimal,
    currency: str,
    payment_method: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> tuple[Purchase, bool]:
    """Persist a purchase and credit the balance once per payment reference.

    Returns ``(purchase, created)``; ``created`` is False when the reference had
    already been recorded and the balance was left untouched.
    """
    credits = _as_decimal(credits)
    price = _as_decimal(price)

    async def _credit() -> tuple[Purchase, bool]:
        existing = await find_purchase(user_id, db, payment_reference=payment_reference)
        if existing is not None:
            return existing, False

        await ensure_account(user_id, db)
        purchase = Purchase(
            user_id=user_id,
            package_id=package_id,
            package_name=package_name,
            credits=credits,
            price=price,
            currency=currency,
            payment_method=payment_method,
            payment_reference=payment_reference,
            status="completed",
            metadata_json=metadata or {},
        )
        db.add(purchase)
        await db.flush()

        await db.execute(
            update(AccountBalance)
            .where(AccountBalance.user_id == user_id)
            .values(
                remaining_credits=AccountBalance.remaining_credits + credits,
                total_credits_purchased=AccountBalance.total_credits_purchased + credits,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return purchase, True

    async def _on_conflict() -> Optional[tuple[Purchase, bool]]:
        existing = await find_purchase(user_id, db, payment_reference=payment_reference)
        if existing is not None:
            return existing, False
        return None

    purchase, created = await run_ledger_mutation(
        db,
        _credit,
        description=f"purchase {payment_reference}",
        on_conflict=_on_conflict,
    )
    if created:
        logger.info(
            "ledger_credit user=%s reference=%s package=%s credits=%s",
            user_id,
            payment_reference,
            package_id,
            credits,
        )
    else:
        logger.info("ledger_credit_duplicate user=%s reference=%s", user_id, payment_reference)
    return purchase, created
