"""Real-time billing of calls as they complete."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker
from services.call_events import CallEventFeed, CallSubscription, CallTransition
from services.credit_processor import BillableCall, load_call, process_call_credits
from services.ledger_errors import CreditResult, TransientError
from services.notifications import (
    NotificationSink,
    credits_deducted_notice,
    insufficient_credits_notice,
    notify,
)

logger = logging.getLogger(__name__)


class CallEventWatcher:
    """Consume call transitions and bill each completion through the credit processor.

    Every completed transition triggers one billing attempt; duplicates are
    resolved by the processor's idempotency, not here.
    """

    def __init__(
        self,
        feed: CallEventFeed,
        *,
        user_id: Optional[str] = None,
        session_maker: Optional[async_sessionmaker] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self._feed = feed
        self._user_id = user_id
        self._session_maker = session_maker or async_session_maker
        self._sink = sink
        self._subscription: Optional[CallSubscription] = None
        self._task: Optional[asyncio.Task] = None
        self.handled = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._subscription = await self._feed.subscribe(user_id=self._user_id)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._feed.unsubscribe(self._subscription)
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        """Consume the feed until it ends, resubscribing after feed failures."""
        failures = 0
        while True:
            try:
                if self._subscription is None:
                    self._subscription = await self._feed.subscribe(user_id=self._user_id)
                async for transition in self._feed.events(self._subscription):
                    failures = 0
                    await self._dispatch(transition)
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                logger.exception("Call event feed failed (attempt %s); resubscribing", failures)
                await self._drop_subscription()

            await asyncio.sleep(self._backoff_seconds(failures))

    async def _dispatch(self, transition: CallTransition) -> None:
        if not transition.is_billable_completion:
            return
        try:
            await self.handle(transition)
        except Exception:
            logger.exception("Call watcher failed on call %s", transition.call_id)
        finally:
            self.handled += 1

    async def _drop_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await self._feed.unsubscribe(subscription)
        except Exception as exc:
            logger.warning("Could not release call feed subscription %s: %s", subscription.subscription_id, exc)

    @staticmethod
    def _backoff_seconds(failures: int) -> float:
        base = max(float(settings.CALL_WATCHER_RESUBSCRIBE_BACKOFF_SECONDS), 0.0)
        ceiling = max(float(settings.CALL_WATCHER_RESUBSCRIBE_MAX_BACKOFF_SECONDS), base)
        return min(base * 2 ** max(failures - 1, 0), ceiling)

    async def handle(self, transition: CallTransition) -> Optional[CreditResult]:
        """Bill one completion and emit the user-facing notification for the outcome."""
        async with self._session_maker() as db:
            call = await self._resolve_call(transition, db)
            try:
                result = await process_call_credits(call, db, tenant_id=transition.user_id, sink=self._sink)
            except TransientError as exc:
                logger.warning("Transient ledger failure for call %s; sweep will retry: %s", call.id, exc.message)
                return None

        if result.ok and result.credits_deducted > 0:
            await notify(self._sink, credits_deducted_notice(call.user_id, call.id, result.credits_deducted))
        elif result.insufficient_credits:
            await notify(self._sink, insufficient_credits_notice(call.user_id, call.id, result.error.message))
        elif result.error is not None and not result.already_processed:
            logger.warning("Call %s not billed: %s", call.id, result.error.message)
        return result

    async def _resolve_call(self, transition: CallTransition, db: AsyncSession) -> BillableCall:
        stored = await load_call(transition.call_id, db)
        if stored is not None:
            return stored
        return BillableCall(
            id=transition.call_id,
            user_id=transition.user_id,
            status=transition.new_status,
            duration_seconds=transition.duration_seconds,
            completed_at=transition.completed_at,
        )
