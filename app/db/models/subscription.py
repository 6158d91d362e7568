"""
Subscription Model - newsletter subscribers
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Uuid

from app.db.database import Base


class SubscriptionStatus(str, enum.Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"


class Subscription(Base):
    """A subscriber. Only confirmed subscribers receive newsletter issues."""

    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(254), nullable=False, unique=True)
    name = Column(String(1024), nullable=False)
    status = Column(
        SQLEnum(SubscriptionStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionStatus.PENDING_CONFIRMATION,
        index=True,
    )
    subscribed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
