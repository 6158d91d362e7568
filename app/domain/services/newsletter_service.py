"""
Newsletter Publish Service - transactional outbox for newsletter issues.

One transaction holds the idempotency reservation, the new issue, one
delivery task per confirmed subscriber and the saved response. Either all
of it commits or none of it does; the delivery worker only ever sees tasks
of fully published issues.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import insert, literal, select, Uuid
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.responses import RedirectResponse, Response

from app.core.exceptions import PersistenceError, ValidationException
from app.core.logging import get_logger, log_async_operation
from app.core.validation import TextSanitizer
from app.db.models.delivery_task import DeliveryTask
from app.db.models.newsletter_issue import NewsletterIssue
from app.db.models.subscription import Subscription
from app.domain.services.idempotency_service import (
    IdempotencyKey,
    IdempotencyService,
    ReturnSavedResponse,
)
from app.domain.services.subscriber_directory import confirmed_filter

logger = get_logger(__name__)

NEWSLETTERS_PATH = "/admin/newsletters"

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000


@dataclass
class PublishOutcome:
    response: Response
    replayed: bool
    newsletter_issue_id: uuid.UUID | None = None
    tasks_staged: int = 0


class NewsletterPublishService:
    """Publish Transaction Coordinator"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        idempotency: IdempotencyService | None = None,
    ):
        self._session_factory = session_factory
        self.idempotency = idempotency or IdempotencyService(session_factory)

    @staticmethod
    def _validate_content(title: str, text_content: str, html_content: str) -> tuple[str, str, str]:
        title = TextSanitizer.sanitize(title, max_length=MAX_CONTENT_LENGTH)
        if not title:
            raise ValidationException("The newsletter title cannot be empty", field="title")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationException(
                f"The newsletter title must be at most {MAX_TITLE_LENGTH} characters long",
                field="title",
            )
        for field, value in (("text", text_content), ("html", html_content)):
            if not value or not value.strip():
                raise ValidationException(f"The newsletter {field} content cannot be empty", field=field)
            if len(value) > MAX_CONTENT_LENGTH:
                raise ValidationException(f"The newsletter {field} content is too long", field=field)
        return title, text_content, html_content

    @log_async_operation("publish_newsletter")
    async def publish(
        self,
        user_id: uuid.UUID,
        title: str,
        text_content: str,
        html_content: str,
        idempotency_key: str,
    ) -> PublishOutcome:
        """
        Publish a newsletter issue exactly once per (user, idempotency key).

        Raises:
            ValidationException: malformed key or content, nothing was opened
            IdempotencyInProgressError: a concurrent publish with the same key
                did not finish within the bounded wait
            PersistenceError: the transaction failed and was rolled back
        """
        key = IdempotencyKey.parse(idempotency_key)
        title, text_content, html_content = self._validate_content(title, text_content, html_content)

        action = await self.idempotency.begin_or_replay(user_id, key)
        if isinstance(action, ReturnSavedResponse):
            logger.info(
                "Newsletter issue already processed for this key",
                extra_data={"user_id": str(user_id), "idempotency_key": key.value},
            )
            return PublishOutcome(response=action.response, replayed=True)

        session = action.session
        try:
            issue_id = await self._insert_newsletter_issue(session, title, text_content, html_content)
            staged = await self._enqueue_delivery_tasks(session, issue_id)
            response = RedirectResponse(NEWSLETTERS_PATH, status_code=303)
            response = await self.idempotency.save_response(session, user_id, key, response)
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(
                "Newsletter publish transaction rolled back",
                extra_data={"user_id": str(user_id), "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("publish newsletter issue", e) from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

        logger.info(
            "Newsletter issue published",
            extra_data={
                "user_id": str(user_id),
                "newsletter_issue_id": str(issue_id),
                "tasks_staged": staged,
            },
        )
        return PublishOutcome(
            response=response,
            replayed=False,
            newsletter_issue_id=issue_id,
            tasks_staged=staged,
        )

    async def _insert_newsletter_issue(
        self,
        session: AsyncSession,
        title: str,
        text_content: str,
        html_content: str,
    ) -> uuid.UUID:
        issue = NewsletterIssue(
            newsletter_issue_id=uuid.uuid4(),
            title=title,
            text_content=text_content,
            html_content=html_content,
        )
        session.add(issue)
        await session.flush()
        return issue.newsletter_issue_id

    async def _enqueue_delivery_tasks(self, session: AsyncSession, issue_id: uuid.UUID) -> int:
        """One set-based INSERT ... SELECT over confirmed subscribers; returns the staged count"""
        stmt = insert(DeliveryTask).from_select(
            ["newsletter_issue_id", "subscriber_email"],
            select(literal(issue_id, Uuid), Subscription.email).where(confirmed_filter()),
        )
        result = await session.execute(stmt)
        return max(result.rowcount, 0)

