"""Outbound, best-effort notifications about ledger activity."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass
class LedgerNotification:
    user_id: str
    kind: str
    title: str
    message: str
    level: str = "info"
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class NotificationSink(ABC):
    """Receiver of fire-and-forget ledger notifications."""

    @abstractmethod
    async def send(self, notification: LedgerNotification) -> None:
        ...

    async def close(self) -> None:
        return None


class LogNotificationSink(NotificationSink):
    async def send(self, notification: LedgerNotification) -> None:
        logger.info(
            "notification user=%s kind=%s level=%s message=%s",
            notification.user_id,
            notification.kind,
            notification.level,
            notification.message,
        )


class InMemoryNotificationSink(NotificationSink):
    """Collects notifications in a list. Used when embedding the ledger and in tests."""

    def __init__(self) -> None:
        self.sent: List[LedgerNotification] = []

    async def send(self, notification: LedgerNotification) -> None:
        self.sent.append(notification)

    def of_kind(self, kind: str) -> List[LedgerNotification]:
        return [item for item in self.sent if item.kind == kind]


class RedisNotificationSink(NotificationSink):
    """Publishes notifications as JSON on ``{prefix}:{user_id}``."""

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None):
        self._client = redis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
        self._prefix = channel_prefix or settings.NOTIFICATION_CHANNEL_PREFIX

    async def send(self, notification: LedgerNotification) -> None:
        await self._client.publish(f"{self._prefix}:{notification.user_id}", notification.to_json())

    async def close(self) -> None:
        await self._client.aclose()


_default_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    """Return the process notification sink configured by NOTIFICATION_BACKEND."""
    global _default_sink
    if _default_sink is None:
        backend = (settings.NOTIFICATION_BACKEND or "log").strip().lower()
        if backend == "redis":
            _default_sink = RedisNotificationSink()
        else:
            _default_sink = LogNotificationSink()
    return _default_sink


def set_notification_sink(sink: Optional[NotificationSink]) -> None:
    global _default_sink
    _default_sink = sink


async def notify(sink: Optional[NotificationSink], notification: LedgerNotification) -> bool:
    """Deliver a notification. Never raises; returns whether delivery succeeded."""
    target = sink or get_notification_sink()
    try:
        await target.send(notification)
        return True
    except Exception as exc:
        logger.warning(
            "Notification delivery failed user=%s kind=%s: %s",
            notification.user_id,
            notification.kind,
            exc,
        )
        return False


def _credits_text(value: Decimal) -> str:
    normalized = value.normalize()
    return format(normalized, "f")


def credits_deducted_notice(user_id: str, call_id: str, credits: Decimal) -> LedgerNotification:
    amount = _credits_text(credits)
    return LedgerNotification(
        user_id=user_id,
        kind="credits_deducted",
        title="Call Processed",
        message=f"{amount} credits deducted ({amount} minutes)",
        data={"call_id": call_id, "credits_deducted": float(credits)},
    )


def insufficient_credits_notice(user_id: str, call_id: str, message: str) -> LedgerNotification:
    return LedgerNotification(
        user_id=user_id,
        kind="insufficient_credits",
        title="Insufficient Credits",
        message=message,
        level="error",
        data={"call_id": call_id},
    )


def purchase_recorded_notice(user_id: str, package_name: str, credits: Decimal) -> LedgerNotification:
    return LedgerNotification(
        user_id=user_id,
        kind="purchase_recorded",
        title="Purchase Recorded",
        message=f"Successfully purchased {package_name} package ({_credits_text(credits)} credits)",
        data={"package_name": package_name, "credits": float(credits)},
    )


def low_balance_notice(user_id: str, balance: Decimal) -> Optional[LedgerNotification]:
    """Build a low-balance warning, or None when the balance is above the warning threshold."""
    if balance >= Decimal(settings.LOW_BALANCE_WARNING_THRESHOLD):
        return None
    is_critical = balance < Decimal(settings.LOW_BALANCE_CRITICAL_THRESHOLD)
    amount = _credits_text(balance)
    if is_critical:
        title = "Critical: Low Credits"
        message = (
            f"Your credit balance is critically low ({amount} credits remaining). "
            "Please add more credits to continue using the service."
        )
    else:
        title = "Low Credits Warning"
        message = (
            f"Your credit balance is getting low ({amount} credits remaining). "
            "Consider adding more credits soon."
        )
    return LedgerNotification(
        user_id=user_id,
        kind="low_balance",
        title=title,
        message=message,
        level="error" if is_critical else "warning",
        data={
            "balance": float(balance),
            "threshold": settings.LOW_BALANCE_CRITICAL_THRESHOLD if is_critical else settings.LOW_BALANCE_WARNING_THRESHOLD,
        },
    )


async def record_in_app_notification(notification: LedgerNotification, db: AsyncSession) -> bool:
    """Persist a notification row for the in-app notification center. Never raises."""
    try:
        db.add(
            Notification(
                user_id=notification.user_id,
                type=notification.level,
                title=notification.title,
                message=notification.message,
                metadata_json=notification.data,
            )
        )
        await db.commit()
        return True
    except Exception as exc:
        await db.rollback()
        logger.warning("Could not persist notification for user %s: %s", notification.user_id, exc)
        return False


async def warn_if_low_balance(
    user_id: str,
    balance: Decimal,
    db: AsyncSession,
    sink: Optional[NotificationSink] = None,
) -> Optional[LedgerNotification]:
    notice = low_balance_notice(user_id, balance)
    if notice is None:
        return None
    await record_in_app_notification(notice, db)
    await notify(sink, notice)
    return notice
