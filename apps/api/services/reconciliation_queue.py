"""Durable on-demand reconciliation jobs (Redis/RQ)."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.reconciliation import process_unprocessed_calls


RECONCILIATION_QUEUE_NAME = "reconciliation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconciliation_queue() -> Queue:
    """Return the configured reconciliation queue."""
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_reconciliation_job(user_id: str) -> Job:
    """Enqueue a reconciliation sweep for one tenant.

    The job id is per tenant so repeated requests collapse onto the queued job.
    """
    queue = get_reconciliation_queue()
    return queue.enqueue(
        "services.reconciliation_queue.process_reconciliation_job",
        user_id,
        job_id=f"reconcile:{user_id}",
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=600,
        result_ttl=3600,
        failure_ttl=86400,
    )


async def process_reconciliation_job_async(user_id: str) -> Dict[str, Any]:
    async with async_session_maker() as db:
        summary = await process_unprocessed_calls(user_id, db)
    return summary.to_dict()


def process_reconciliation_job(user_id: str) -> Dict[str, Any]:
    """RQ entrypoint."""
    return asyncio.run(process_reconciliation_job_async(user_id))
