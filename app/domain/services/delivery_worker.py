"""
Delivery Worker - drains the newsletter delivery queue.

Each batch: claim tasks (one short transaction), send the emails
concurrently under a semaphore with a per-send timeout, then record every
outcome in its own short transaction. A crash at any point leaves claimed
tasks in_progress; they become eligible again once the claim times out.
Delivery is therefore at-least-once.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, asdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import EmailDeliveryError
from app.core.logging import get_logger, set_correlation_id
from app.db.models.delivery_task import DeliveryTaskStatus
from app.db.models.newsletter_issue import NewsletterIssue
from app.domain.services.delivery_queue_service import ClaimedTask, DeliveryQueueService
from app.domain.services.email.base_transport import BaseEmailTransport

logger = get_logger(__name__)


@dataclass
class BatchReport:
    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed_permanently: int = 0
    lost_claims: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class _SendOutcome:
    task: ClaimedTask
    error: str | None = None
    retryable: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None


class DeliveryWorker:
    """
    Single-process delivery worker.

    Several workers (or several processes) may run against the same
    database; the conditional claim in DeliveryQueueService keeps them from
    sending the same task at the same time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: BaseEmailTransport,
        *,
        batch_size: int | None = None,
        concurrency: int | None = None,
        send_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        queue_options: dict[str, Any] | None = None,
    ):
        self._session_factory = session_factory
        self.transport = transport
        self.batch_size = batch_size or settings.DELIVERY_BATCH_SIZE
        self.concurrency = concurrency or settings.DELIVERY_CONCURRENCY
        self.send_timeout_seconds = send_timeout_seconds or settings.EMAIL_TIMEOUT_SECONDS
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None
            else settings.DELIVERY_POLL_INTERVAL_SECONDS
        )
        self._queue_options = queue_options or {}

    def _queue(self, session: AsyncSession) -> DeliveryQueueService:
        return DeliveryQueueService(session, **self._queue_options)

    async def run_once(self) -> BatchReport:
        """Process one batch and report what happened to it"""
        async with self._session_factory() as session:
            tasks = await self._queue(session).claim_batch(self.batch_size)
            if not tasks:
                return BatchReport()
            issues = await self._load_issues(session, {t.newsletter_issue_id for t in tasks})

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._send(semaphore, task, issues.get(task.newsletter_issue_id)) for task in tasks)
        )

        report = BatchReport(claimed=len(tasks))
        for outcome in outcomes:
            await self._resolve(outcome, report)

        logger.info("Delivery batch processed", extra_data=report.to_dict())
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Loop run_once until ``stop_event`` is set; sleep while the queue is empty"""
        logger.info(
            "Delivery worker started",
            extra_data={
                "batch_size": self.batch_size,
                "concurrency": self.concurrency,
                "poll_interval_seconds": self.poll_interval_seconds,
            },
        )
        while not stop_event.is_set():
            set_correlation_id()
            try:
                report = await self.run_once()
            except Exception as e:
                logger.error(
                    "Delivery batch failed",
                    extra_data={"error": str(e)},
                    exc_info=True,
                )
                report = None

            if report is None or report.claimed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass

        logger.info("Delivery worker stopped")

    @staticmethod
    async def _load_issues(
        session: AsyncSession,
        issue_ids: set[uuid.UUID],
    ) -> dict[uuid.UUID, NewsletterIssue]:
        result = await session.execute(
            select(NewsletterIssue).where(NewsletterIssue.newsletter_issue_id.in_(issue_ids))
        )
        return {issue.newsletter_issue_id: issue for issue in result.scalars().all()}

    async def _send(
        self,
        semaphore: asyncio.Semaphore,
        task: ClaimedTask,
        issue: NewsletterIssue | None,
    ) -> _SendOutcome:
        async with semaphore:
            if issue is None:
                return _SendOutcome(task, error="newsletter issue not found", retryable=False)

            try:
                await asyncio.wait_for(
                    self.transport.send(
                        task.subscriber_email,
                        issue.title,
                        issue.html_content,
                        issue.text_content,
                    ),
                    timeout=self.send_timeout_seconds,
                )
            except EmailDeliveryError as e:
                return _SendOutcome(task, error=e.message, retryable=e.retryable)
            except asyncio.TimeoutError:
                return _SendOutcome(
                    task,
                    error=f"send timed out after {self.send_timeout_seconds}s",
                    retryable=True,
                )
            except Exception as e:
                logger.error(
                    "Unexpected error from email transport",
                    extra_data={"task": task.ref, "error": str(e)},
                    exc_info=True,
                )
                return _SendOutcome(task, error=f"{type(e).__name__}: {e}", retryable=True)

            return _SendOutcome(task)

    async def _resolve(self, outcome: _SendOutcome, report: BatchReport) -> None:
        """Record one outcome in its own transaction; errors are logged, the claim then times out"""
        try:
            async with self._session_factory() as session:
                queue = self._queue(session)
                if outcome.ok:
                    if await queue.mark_delivered(outcome.task):
                        report.delivered += 1
                    else:
                        report.lost_claims += 1
                    return

                status = await queue.mark_failed(outcome.task, outcome.error, outcome.retryable)
                if status is None:
                    report.lost_claims += 1
                elif status == DeliveryTaskStatus.FAILED_PERMANENTLY:
                    report.failed_permanently += 1
                else:
                    report.retried += 1
        except Exception as e:
            logger.error(
                "Failed to record delivery outcome",
                extra_data={"task": outcome.task.ref, "error": str(e)},
                exc_info=True,
            )
