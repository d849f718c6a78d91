"""Typed feed of call status transitions.

The call subsystem publishes a :class:`CallTransition` whenever a call changes
status. Consumers subscribe (optionally scoped to one tenant), iterate the
subscription with ``async for``, and unsubscribe on teardown.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class CallTransition:
    call_id: str
    user_id: str
    old_status: Optional[str]
    new_status: str
    duration_seconds: Optional[int] = None
    completed_at: Optional[datetime] = None

    @property
    def is_billable_completion(self) -> bool:
        return self.new_status == "completed" and bool(self.duration_seconds) and int(self.duration_seconds) > 0

    def to_json(self) -> str:
        payload = asdict(self)
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> "CallTransition":
        payload: Dict[str, Any] = json.loads(raw)
        completed_at = payload.get("completed_at")
        return cls(
            call_id=str(payload["call_id"]),
            user_id=str(payload["user_id"]),
            old_status=payload.get("old_status"),
            new_status=str(payload["new_status"]),
            duration_seconds=payload.get("duration_seconds"),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )


@dataclass
class CallSubscription:
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None  # None = all tenants

    def matches(self, transition: CallTransition) -> bool:
        return self.user_id is None or transition.user_id == self.user_id


class CallEventFeed(ABC):
    """Publish/subscribe channel for call transitions."""

    @abstractmethod
    async def publish(self, transition: CallTransition) -> None:
        ...

    @abstractmethod
    async def subscribe(self, user_id: Optional[str] = None) -> CallSubscription:
        ...

    @abstractmethod
    def events(self, subscription: CallSubscription) -> AsyncIterator[CallTransition]:
        ...

    @abstractmethod
    async def unsubscribe(self, subscription: CallSubscription) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class InMemoryCallEventFeed(CallEventFeed):
    """Single-process feed with a bounded queue per subscriber.

    ``publish`` waits up to ``publish_timeout`` for room in a full subscriber
    queue, then drops the transition for that subscriber. Dropped completions
    are picked up by the reconciliation sweep.
    """

    def __init__(self, max_queue_size: Optional[int] = None, publish_timeout: Optional[float] = None):
        self._max_queue_size = max(int(max_queue_size or settings.CALL_EVENT_QUEUE_SIZE), 1)
        self._publish_timeout = float(
            settings.CALL_EVENT_PUBLISH_TIMEOUT_SECONDS if publish_timeout is None else publish_timeout
        )
        self._subscriptions: Dict[str, CallSubscription] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._closed = False
        self.dropped = 0

    async def publish(self, transition: CallTransition) -> None:
        if self._closed:
            return
        for sub_id, subscription in list(self._subscriptions.items()):
            if not subscription.matches(transition):
                continue
            queue = self._queues.get(sub_id)
            if queue is None:
                continue
            try:
                await asyncio.wait_for(queue.put(transition), timeout=self._publish_timeout)
            except asyncio.TimeoutError:
                self.dropped += 1
                logger.warning(
                    "Call event queue full for subscription %s; dropped transition for call %s",
                    sub_id,
                    transition.call_id,
                )

    async def subscribe(self, user_id: Optional[str] = None) -> CallSubscription:
        subscription = CallSubscription(user_id=user_id)
        self._subscriptions[subscription.subscription_id] = subscription
        self._queues[subscription.subscription_id] = asyncio.Queue(maxsize=self._max_queue_size)
        return subscription

    async def events(self, subscription: CallSubscription) -> AsyncIterator[CallTransition]:
        queue = self._queues.get(subscription.subscription_id)
        if queue is None:
            return
        while True:
            transition = await queue.get()
            if transition is None:
                break
            yield transition

    def _wake(self, queue: asyncio.Queue) -> None:
        # Make room for the close sentinel; the subscriber is going away.
        while True:
            try:
                queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def unsubscribe(self, subscription: CallSubscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)
        queue = self._queues.pop(subscription.subscription_id, None)
        if queue is not None:
            self._wake(queue)

    async def close(self) -> None:
        self._closed = True
        for queue in self._queues.values():
            self._wake(queue)
        self._queues.clear()
        self._subscriptions.clear()


class RedisCallEventFeed(CallEventFeed):
    """Feed backed by Redis pub/sub on ``{prefix}:{user_id}`` channels."""

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None):
        self._client = redis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
        self._prefix = channel_prefix or settings.CALL_EVENT_CHANNEL_PREFIX
        self._pubsubs: Dict[str, Any] = {}

    def _channel(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    async def publish(self, transition: CallTransition) -> None:
        await self._client.publish(self._channel(transition.user_id), transition.to_json())

    async def subscribe(self, user_id: Optional[str] = None) -> CallSubscription:
        subscription = CallSubscription(user_id=user_id)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        if user_id is None:
            await pubsub.psubscribe(f"{self._prefix}:*")
        else:
            await pubsub.subscribe(self._channel(user_id))
        self._pubsubs[subscription.subscription_id] = pubsub
        return subscription

    async def events(self, subscription: CallSubscription) -> AsyncIterator[CallTransition]:
        pubsub = self._pubsubs.get(subscription.subscription_id)
        if pubsub is None:
            return
        async for message in pubsub.listen():
            if message.get("type") not in ("message", "pmessage"):
                continue
            try:
                transition = CallTransition.from_json(message["data"])
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Discarding malformed call event: %s", exc)
                continue
            if subscription.matches(transition):
                yield transition

    async def unsubscribe(self, subscription: CallSubscription) -> None:
        pubsub = self._pubsubs.pop(subscription.subscription_id, None)
        if pubsub is not None:
            await pubsub.aclose()

    async def close(self) -> None:
        for pubsub in list(self._pubsubs.values()):
            await pubsub.aclose()
        self._pubsubs.clear()
        await self._client.aclose()


def build_call_event_feed() -> CallEventFeed:
    backend = (settings.CALL_EVENT_BACKEND or "memory").strip().lower()
    if backend == "redis":
        return RedisCallEventFeed()
    return InMemoryCallEventFeed()
