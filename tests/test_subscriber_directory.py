"""
Tests for SubscriberDirectory
"""
import pytest

from app.db.models.subscription import SubscriptionStatus
from app.domain.services.subscriber_directory import SubscriberDirectory


class TestListConfirmedEmails:

    @pytest.mark.asyncio
    async def test_only_confirmed_sorted(self, db_session, subscriber_factory):
        await subscriber_factory(email="zoe@example.com")
        await subscriber_factory(email="adam@example.com")
        await subscriber_factory(email="pending@example.com", status=SubscriptionStatus.PENDING_CONFIRMATION)

        emails = await SubscriberDirectory(db_session).list_confirmed_emails()

        assert emails == ["adam@example.com", "zoe@example.com"]

    @pytest.mark.asyncio
    async def test_empty(self, db_session):
        assert await SubscriberDirectory(db_session).list_confirmed_emails() == []
