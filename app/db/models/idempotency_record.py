"""
Idempotency Record Model - saved responses of side-effecting requests.

A row without response_status_code is a reservation held by an in-flight
request. Once the response is saved the row is never updated again.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, LargeBinary, DateTime, JSON, Index, Uuid

from app.db.database import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency"

    user_id = Column(Uuid, primary_key=True)
    idempotency_key = Column(String(50), primary_key=True)

    response_status_code = Column(Integer, nullable=True)
    # [[name, value], ...] in wire order, duplicates kept
    response_headers = Column(JSON, nullable=True)
    response_body = Column(LargeBinary, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_idempotency_created_at", "created_at"),
    )

    @property
    def is_completed(self) -> bool:
        return self.response_status_code is not None
