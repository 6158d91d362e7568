"""
Celery Tasks

- process_delivery_queue: one batch of the newsletter delivery queue
- cleanup_expired_idempotency_records: retention for saved responses

Celery workers are synchronous; each task drives its coroutine on a
private event loop that is torn down when the task returns.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Coroutine, Iterator, TypeVar

from app.workers.celery_app import celery_app
from app.db.database import get_task_session_factory
from app.domain.services.delivery_worker import DeliveryWorker
from app.domain.services.email import get_email_transport
from app.domain.services.idempotency_service import IdempotencyService
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import close_redis

logger = get_logger(__name__)

T = TypeVar("T")


@contextmanager
def get_event_loop() -> Iterator[asyncio.AbstractEventLoop]:
    """Fresh event loop for one task; pending work and loop-bound clients are closed on exit"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning("Failed to close Redis at task end", extra_data={"error": str(e)})

        leftovers = asyncio.all_tasks(loop)
        for task in leftovers:
            task.cancel()
        if leftovers:
            loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` to completion from synchronous Celery code"""
    set_correlation_id()
    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.process_delivery_queue")
def process_delivery_queue() -> dict[str, int]:
    """
    Process one batch of due delivery tasks.

    Overlapping runs are safe: a task is handed to exactly one batch by the
    conditional claim, and a batch cut short leaves its claims to expire.
    """

    async def _process() -> dict[str, int]:
        async with get_task_session_factory() as session_factory:
            worker = DeliveryWorker(session_factory, get_email_transport())
            report = await worker.run_once()
        return report.to_dict()

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.cleanup_expired_idempotency_records")
def cleanup_expired_idempotency_records(days: int | None = None) -> dict[str, int]:
    """Delete completed idempotency records older than ``days`` (default from settings)"""

    async def _cleanup() -> dict[str, int]:
        async with get_task_session_factory() as session_factory:
            deleted = await IdempotencyService(session_factory).cleanup_expired(days)
        return {"deleted": deleted}

    return run_async(_cleanup())
