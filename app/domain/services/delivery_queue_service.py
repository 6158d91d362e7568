"""
Delivery Queue Service - claim and resolve newsletter delivery tasks.

The queue is the issue_delivery_queue table itself. A task is claimed by a
conditional UPDATE that repeats the eligibility predicate, so two workers
racing for the same row cannot both win: the database serialises them and
only one UPDATE matches.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List

from sqlalchemy import and_, or_, select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateTransitionError, NotFoundException
from app.core.logging import get_logger
from app.core.validation import EmailValidator
from app.db.models.delivery_task import DeliveryTask, DeliveryTaskStatus, ALLOWED_TRANSITIONS
from app.db.models.newsletter_issue import NewsletterIssue

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000

_CLAIM_EXPIRED_ERROR = "claim expired before the worker resolved the task"


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Calculate exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Is 2**retry_count >= ceil(max/base)? Decide without computing 2**retry_count.
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds  # ceil div
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


def ensure_transition(
    current: DeliveryTaskStatus,
    target: DeliveryTaskStatus,
    task_ref: str | None = None,
) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransitionError(current.value, target.value, task_ref)


@dataclass(frozen=True)
class ClaimedTask:
    """A task this worker holds; claimed_at identifies the claim"""
    newsletter_issue_id: uuid.UUID
    subscriber_email: str
    attempt_count: int
    claimed_at: datetime

    @property
    def ref(self) -> str:
        return f"{self.newsletter_issue_id}/{EmailValidator.mask(self.subscriber_email)}"


@dataclass
class DeliveryReport:
    newsletter_issue_id: uuid.UUID
    pending: int = 0
    in_progress: int = 0
    delivered: int = 0
    failed_permanently: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.delivered + self.failed_permanently

    @property
    def is_complete(self) -> bool:
        """Every task reached a terminal status"""
        return self.pending == 0 and self.in_progress == 0

    def to_dict(self) -> dict:
        return {
            "newsletter_issue_id": str(self.newsletter_issue_id),
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "delivered": self.delivered,
            "failed_permanently": self.failed_permanently,
            "is_complete": self.is_complete,
        }


class DeliveryQueueService:
    """
    Service for claiming and resolving delivery tasks.

    Every public method runs in, and commits, the session it was built with.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_attempts: int | None = None,
        retry_base_seconds: int | None = None,
        max_backoff_seconds: int | None = None,
        claim_timeout_seconds: int | None = None,
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.DELIVERY_RETRY_BASE_SECONDS
        )
        self.max_backoff_seconds = max_backoff_seconds or settings.DELIVERY_MAX_BACKOFF_SECONDS
        self.claim_timeout_seconds = (
            claim_timeout_seconds if claim_timeout_seconds is not None
            else settings.DELIVERY_CLAIM_TIMEOUT_SECONDS
        )

    def backoff_seconds(self, attempt_count: int) -> int:
        """Delay before the next attempt after ``attempt_count`` failures"""
        return _calculate_backoff_seconds(
            attempt_count - 1,
            base_seconds=self.retry_base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )

    def _eligible(self, now: datetime):
        """Due pending tasks, plus in-progress tasks whose claim has expired"""
        claim_expired_before = now - timedelta(seconds=self.claim_timeout_seconds)
        return or_(
            and_(
                DeliveryTask.status == DeliveryTaskStatus.PENDING,
                or_(
                    DeliveryTask.next_attempt_at.is_(None),
                    DeliveryTask.next_attempt_at <= now,
                ),
            ),
            and_(
                DeliveryTask.status == DeliveryTaskStatus.IN_PROGRESS,
                DeliveryTask.claimed_at < claim_expired_before,
            ),
        )

    async def claim_batch(self, limit: int | None = None) -> List[ClaimedTask]:
        """
        Claim up to ``limit`` eligible tasks and commit the claims.

        Candidates are locked with FOR UPDATE SKIP LOCKED where the database
        supports it; each claim is then a conditional UPDATE, so a row that
        stopped being eligible in between is simply not returned.

        Reclaiming an expired claim counts one attempt. A task whose expired
        claims use up max_attempts becomes failed_permanently instead of
        being handed out again.
        """
        limit = limit or settings.DELIVERY_BATCH_SIZE
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(
                DeliveryTask.newsletter_issue_id,
                DeliveryTask.subscriber_email,
                DeliveryTask.status,
                DeliveryTask.attempt_count,
            )
            .where(self._eligible(now))
            .order_by(DeliveryTask.created_at, DeliveryTask.subscriber_email)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidates = result.all()

        claimed: List[ClaimedTask] = []
        retired = 0
        for row in candidates:
            reclaim = row.status == DeliveryTaskStatus.IN_PROGRESS
            # An expired claim is an attempt its worker never resolved
            attempt_count = row.attempt_count + 1 if reclaim else row.attempt_count
            target = (
                DeliveryTaskStatus.FAILED_PERMANENTLY
                if reclaim and attempt_count >= self.max_attempts
                else DeliveryTaskStatus.IN_PROGRESS
            )
            ensure_transition(row.status, target)

            values = {"status": target, "attempt_count": attempt_count}
            if target == DeliveryTaskStatus.IN_PROGRESS:
                values["claimed_at"] = now
            if reclaim:
                values["last_error"] = _CLAIM_EXPIRED_ERROR

            update_result = await self.db.execute(
                update(DeliveryTask)
                .where(
                    DeliveryTask.newsletter_issue_id == row.newsletter_issue_id,
                    DeliveryTask.subscriber_email == row.subscriber_email,
                    DeliveryTask.attempt_count == row.attempt_count,
                    self._eligible(now),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount != 1:
                continue

            task = ClaimedTask(
                newsletter_issue_id=row.newsletter_issue_id,
                subscriber_email=row.subscriber_email,
                attempt_count=attempt_count,
                claimed_at=now,
            )
            if target == DeliveryTaskStatus.FAILED_PERMANENTLY:
                retired += 1
                logger.error(
                    "Delivery task failed permanently after repeated expired claims",
                    extra_data={"task": task.ref, "attempt_count": attempt_count},
                )
                continue
            if reclaim:
                logger.warning(
                    "Reclaimed abandoned delivery task",
                    extra_data={"task": task.ref, "attempt_count": attempt_count},
                )
            claimed.append(task)

        await self.db.commit()

        if claimed or retired:
            logger.info(
                "Delivery tasks claimed",
                extra_data={
                    "claimed": len(claimed),
                    "retired": retired,
                    "candidates": len(candidates),
                },
            )
        return claimed

    async def _load_owned(self, task: ClaimedTask) -> DeliveryTask | None:
        """Lock the row if our claim is still the current one"""
        result = await self.db.execute(
            select(DeliveryTask)
            .where(
                DeliveryTask.newsletter_issue_id == task.newsletter_issue_id,
                DeliveryTask.subscriber_email == task.subscriber_email,
                DeliveryTask.claimed_at == task.claimed_at,
            )
            .with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            await self.db.rollback()
            logger.warning(
                "Delivery task claim lost, leaving it to the current owner",
                extra_data={"task": task.ref},
            )
        return row

    async def mark_delivered(self, task: ClaimedTask) -> bool:
        """in_progress -> delivered. Returns False when the claim was lost."""
        row = await self._load_owned(task)
        if row is None:
            return False

        ensure_transition(row.status, DeliveryTaskStatus.DELIVERED, task.ref)
        row.status = DeliveryTaskStatus.DELIVERED
        row.delivered_at = datetime.now(timezone.utc)
        await self.db.commit()
        return True

    async def mark_failed(
        self,
        task: ClaimedTask,
        error: str,
        retryable: bool,
    ) -> DeliveryTaskStatus | None:
        """
        Record a failed attempt.

        Returns the new status (pending for a scheduled retry,
        failed_permanently at the ceiling or for a permanent error), or None
        when the claim was lost.
        """
        row = await self._load_owned(task)
        if row is None:
            return None

        row.attempt_count += 1
        row.last_error = (error or "")[:_MAX_ERROR_LENGTH]

        if not retryable or row.attempt_count >= self.max_attempts:
            ensure_transition(row.status, DeliveryTaskStatus.FAILED_PERMANENTLY, task.ref)
            row.status = DeliveryTaskStatus.FAILED_PERMANENTLY
            logger.error(
                "Delivery task failed permanently",
                extra_data={
                    "task": task.ref,
                    "attempt_count": row.attempt_count,
                    "retryable": retryable,
                    "error": row.last_error,
                },
            )
        else:
            ensure_transition(row.status, DeliveryTaskStatus.PENDING, task.ref)
            delay = self.backoff_seconds(row.attempt_count)
            row.status = DeliveryTaskStatus.PENDING
            row.claimed_at = None
            row.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            logger.warning(
                "Delivery task scheduled for retry",
                extra_data={
                    "task": task.ref,
                    "attempt_count": row.attempt_count,
                    "backoff_seconds": delay,
                },
            )

        new_status = row.status
        await self.db.commit()
        return new_status

    async def issue_delivery_report(self, newsletter_issue_id: uuid.UUID) -> DeliveryReport:
        """Task counts per status for one issue"""
        issue = await self.db.get(NewsletterIssue, newsletter_issue_id)
        if issue is None:
            raise NotFoundException("NewsletterIssue", newsletter_issue_id)

        result = await self.db.execute(
            select(DeliveryTask.status, func.count())
            .where(DeliveryTask.newsletter_issue_id == newsletter_issue_id)
            .group_by(DeliveryTask.status)
        )

        report = DeliveryReport(newsletter_issue_id=newsletter_issue_id)
        for status, count in result.all():
            setattr(report, DeliveryTaskStatus(status).value, count)
        return report
