"""
Delivery Task Model - transactional outbox of newsletter emails.

One row per (issue, subscriber email). Rows are staged in the same
transaction as the issue and are never deleted; the status column is the
delivery history.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, Enum as SQLEnum, ForeignKey, Index, Uuid

from app.db.database import Base


class DeliveryTaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    FAILED_PERMANENTLY = "failed_permanently"


# in_progress -> in_progress is a reclaim of an abandoned claim
ALLOWED_TRANSITIONS: dict[DeliveryTaskStatus, frozenset[DeliveryTaskStatus]] = {
    DeliveryTaskStatus.PENDING: frozenset({DeliveryTaskStatus.IN_PROGRESS}),
    DeliveryTaskStatus.IN_PROGRESS: frozenset({
        DeliveryTaskStatus.IN_PROGRESS,
        DeliveryTaskStatus.PENDING,
        DeliveryTaskStatus.DELIVERED,
        DeliveryTaskStatus.FAILED_PERMANENTLY,
    }),
    DeliveryTaskStatus.DELIVERED: frozenset(),
    DeliveryTaskStatus.FAILED_PERMANENTLY: frozenset(),
}


class DeliveryTask(Base):
    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id = Column(
        Uuid,
        ForeignKey("newsletter_issues.newsletter_issue_id"),
        primary_key=True,
    )
    subscriber_email = Column(String(254), primary_key=True)

    status = Column(
        SQLEnum(DeliveryTaskStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeliveryTaskStatus.PENDING,
        server_default=DeliveryTaskStatus.PENDING.value,
    )
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(String(1000), nullable=True)

    # Timestamps
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_issue_delivery_queue_status_next_attempt", "status", "next_attempt_at"),
    )

    @property
    def ref(self) -> str:
        return f"{self.newsletter_issue_id}/{self.subscriber_email}"
