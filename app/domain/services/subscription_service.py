"""
Subscription Service - subscribe and confirm flows.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ErrorCode,
    UnauthorizedException,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import (
    EmailValidator,
    SubscriberNameValidator,
    SubscriptionTokenValidator,
    TextSanitizer,
)
from app.db.models.subscription import Subscription, SubscriptionStatus
from app.db.models.subscription_token import SubscriptionToken
from app.domain.services.email.base_transport import BaseEmailTransport

logger = get_logger(__name__)

CONFIRMATION_SUBJECT = "Welcome!"


def confirmation_link(token: str) -> str:
    return f"{settings.BASE_URL}/subscriptions/confirm?subscription_token={token}"


def render_confirmation_email(link: str) -> tuple[str, str]:
    """(html_body, text_body) of the confirmation email"""
    safe_link = TextSanitizer.sanitize_for_html(link)
    html_body = (
        "Welcome to our newsletter!<br />"
        f'Click <a href="{safe_link}">here</a> to confirm your subscription.'
    )
    text_body = f"Welcome to our newsletter!\nVisit {link} to confirm your subscription."
    return html_body, text_body


class SubscriptionService:

    def __init__(self, db: AsyncSession, transport: BaseEmailTransport):
        self.db = db
        self.transport = transport

    @staticmethod
    def parse_new_subscriber(name: str, email: str) -> tuple[str, str]:
        """Validate form input; raises ValidationException"""
        name = (name or "").strip()
        is_valid, error = SubscriberNameValidator.validate(name)
        if not is_valid:
            raise ValidationException(error, field="name")

        email = EmailValidator.normalize(email or "")
        if not EmailValidator.validate(email):
            raise ValidationException("Invalid email address", field="email")
        return name, email

    async def subscribe(self, name: str, email: str) -> Subscription:
        """
        Register a subscriber (or reuse an earlier registration) and send the
        confirmation email.

        The subscriber row and its token are committed before the email is
        sent, so a failed send can be fixed by subscribing again: the same
        token is reused.
        """
        name, email = self.parse_new_subscriber(name, email)

        subscriber = await self._get_by_email(email)
        if subscriber is None:
            subscriber = Subscription(
                id=uuid.uuid4(),
                email=email,
                name=name,
                status=SubscriptionStatus.PENDING_CONFIRMATION,
                subscribed_at=datetime.now(timezone.utc),
            )
            self.db.add(subscriber)
            try:
                await self.db.flush()
            except IntegrityError:
                # concurrent subscribe with the same address
                await self.db.rollback()
                subscriber = await self._get_by_email(email)

        token = await self._get_token(subscriber.id)
        if token is None:
            token = SubscriptionToken.generate()
            self.db.add(SubscriptionToken(subscription_token=token, subscriber_id=subscriber.id))

        await self.db.commit()

        html_body, text_body = render_confirmation_email(confirmation_link(token))
        await self.transport.send(email, CONFIRMATION_SUBJECT, html_body, text_body)

        logger.info(
            "Confirmation email sent",
            extra_data={
                "subscriber_id": str(subscriber.id),
                "email": EmailValidator.mask(email),
                "status": subscriber.status.value,
            },
        )
        return subscriber

    async def confirm(self, subscription_token: str) -> Subscription:
        """
        Confirm the subscriber owning ``subscription_token``.

        Raises:
            ValidationException: malformed token
            UnauthorizedException: unknown token
        """
        if not SubscriptionTokenValidator.validate(subscription_token or ""):
            raise ValidationException(
                "Invalid subscription token",
                field="subscription_token",
                error_code=ErrorCode.SUBSCRIPTION_TOKEN_INVALID,
            )

        result = await self.db.execute(
            select(Subscription)
            .join(SubscriptionToken, SubscriptionToken.subscriber_id == Subscription.id)
            .where(SubscriptionToken.subscription_token == subscription_token)
            .with_for_update()
        )
        subscriber = result.scalar_one_or_none()
        if subscriber is None:
            raise UnauthorizedException(
                "Unknown subscription token",
                error_code=ErrorCode.SUBSCRIPTION_TOKEN_UNKNOWN,
            )

        subscriber.status = SubscriptionStatus.CONFIRMED
        await self.db.commit()

        logger.info(
            "Subscriber confirmed",
            extra_data={"subscriber_id": str(subscriber.id)},
        )
        return subscriber

    async def _get_by_email(self, email: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(Subscription.email == email)
        )
        return result.scalar_one_or_none()

    async def _get_token(self, subscriber_id: uuid.UUID) -> str | None:
        result = await self.db.execute(
            select(SubscriptionToken.subscription_token)
            .where(SubscriptionToken.subscriber_id == subscriber_id)
            .limit(1)
        )
        return result.scalar_one_or_none()
