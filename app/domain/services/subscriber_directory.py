"""
Subscriber Directory - read side of the subscriptions table.
"""
from __future__ import annotations

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.subscription import Subscription, SubscriptionStatus


def confirmed_filter():
    """Predicate shared with the set-based task staging"""
    return Subscription.status == SubscriptionStatus.CONFIRMED


class SubscriberDirectory:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_confirmed_emails(self) -> List[str]:
        result = await self.db.execute(
            select(Subscription.email)
            .where(confirmed_filter())
            .order_by(Subscription.email)
        )
        return list(result.scalars().all())
