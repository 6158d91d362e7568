"""
Idempotency Service - save and replay responses of side-effecting requests.

Records are keyed by (user_id, idempotency_key). The primary key is the only
arbiter between concurrent requests: the request whose INSERT lands owns the
key and performs the side effects in the same transaction as the
reservation, so other requests observe either "no row" or "completed".
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update, delete, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.responses import Response

from app.core.config import settings
from app.core.exceptions import (
    ErrorCode,
    IdempotencyInProgressError,
    IdempotencyReservationLostError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.idempotency_record import IdempotencyRecord

logger = get_logger(__name__)

MAX_KEY_LENGTH = 50

# Upper bound for a single poll sleep
_MAX_POLL_INTERVAL_SECONDS = 1.0

# PostgreSQL lock_not_available
_LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    @classmethod
    def parse(cls, value: str | None) -> "IdempotencyKey":
        """Validate a client supplied key; raises ValidationException"""
        if not value:
            raise ValidationException(
                "The idempotency key cannot be empty",
                field="idempotency_key",
                error_code=ErrorCode.IDEMPOTENCY_KEY_INVALID,
            )
        if len(value) > MAX_KEY_LENGTH:
            raise ValidationException(
                f"The idempotency key must be at most {MAX_KEY_LENGTH} characters long",
                field="idempotency_key",
                error_code=ErrorCode.IDEMPOTENCY_KEY_INVALID,
            )
        return cls(value)

    def __str__(self) -> str:
        return self.value


@dataclass
class StartProcessing:
    """The caller owns the key. ``session`` holds the open reservation transaction."""
    session: AsyncSession


@dataclass
class ReturnSavedResponse:
    response: Response


NextAction = StartProcessing | ReturnSavedResponse


def serialize_headers(response: Response) -> list[list[str]]:
    return [
        [name.decode("latin-1"), value.decode("latin-1")]
        for name, value in response.raw_headers
    ]


def rebuild_response(record: IdempotencyRecord) -> Response:
    """Rebuild the saved response byte for byte (status, header order, body)"""
    response = Response(
        content=record.response_body or b"",
        status_code=record.response_status_code,
    )
    response.raw_headers = [
        (name.encode("latin-1"), value.encode("latin-1"))
        for name, value in (record.response_headers or [])
    ]
    return response


def _insert_for(session: AsyncSession):
    """Dialect specific INSERT supporting ON CONFLICT DO NOTHING"""
    if session.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


class IdempotencyService:
    """
    Reservation, replay and persistence of idempotent responses.

    The service opens its own sessions: a request that wins the key receives
    the session whose transaction holds the reservation and must finish it
    with save_response() (commit) or roll it back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stale_seconds: int | None = None,
        max_wait_seconds: float | None = None,
        poll_base_seconds: float | None = None,
    ):
        self._session_factory = session_factory
        self._stale_seconds = (
            stale_seconds if stale_seconds is not None else settings.IDEMPOTENCY_STALE_SECONDS
        )
        self._max_wait_seconds = (
            max_wait_seconds if max_wait_seconds is not None else settings.IDEMPOTENCY_MAX_WAIT_SECONDS
        )
        self._poll_base_seconds = (
            poll_base_seconds if poll_base_seconds is not None else settings.IDEMPOTENCY_POLL_BASE_SECONDS
        )

    async def begin_or_replay(self, user_id: uuid.UUID, key: IdempotencyKey) -> NextAction:
        """
        Reserve the key or return the saved response.

        Raises:
            IdempotencyInProgressError: another request holds the key and did
                not finish within the bounded wait.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self._max_wait_seconds
        attempt = 0

        while True:
            session = self._session_factory()
            owned = False
            try:
                if await self._try_reserve(session, user_id, key, deadline - loop.time()):
                    owned = True
                    return StartProcessing(session)

                record = await session.get(IdempotencyRecord, (user_id, key.value))
                if record is not None and record.is_completed:
                    logger.info(
                        "Replaying saved response",
                        extra_data={"user_id": str(user_id), "idempotency_key": key.value},
                    )
                    return ReturnSavedResponse(rebuild_response(record))

                if record is not None and await self._take_over_stale(session, user_id, key):
                    owned = True
                    logger.warning(
                        "Took over stale idempotency reservation",
                        extra_data={"user_id": str(user_id), "idempotency_key": key.value},
                    )
                    return StartProcessing(session)
            finally:
                if not owned:
                    await session.close()

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise IdempotencyInProgressError(key.value, loop.time() - started)

            delay = min(
                self._poll_base_seconds * (2 ** attempt),
                _MAX_POLL_INTERVAL_SECONDS,
                remaining,
            )
            attempt += 1
            await asyncio.sleep(delay)

    async def _try_reserve(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        key: IdempotencyKey,
        remaining_seconds: float,
    ) -> bool:
        """
        INSERT the started row; False when the key already exists.

        On PostgreSQL a concurrent INSERT of the same key waits for the
        holder's transaction, bounded by lock_timeout.
        """
        is_postgres = session.get_bind().dialect.name == "postgresql"
        if is_postgres:
            timeout_ms = max(int(remaining_seconds * 1000), 1)
            await session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

        insert = _insert_for(session)
        stmt = (
            insert(IdempotencyRecord)
            .values(
                user_id=user_id,
                idempotency_key=key.value,
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "idempotency_key"])
        )

        try:
            result = await session.execute(stmt)
        except DBAPIError as exc:
            if getattr(exc.orig, "sqlstate", None) == _LOCK_NOT_AVAILABLE_SQLSTATE:
                await session.rollback()
                return False
            raise

        if is_postgres:
            await session.execute(text("SET LOCAL lock_timeout = DEFAULT"))

        return result.rowcount == 1

    async def _take_over_stale(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        key: IdempotencyKey,
    ) -> bool:
        """Claim a started row abandoned by a crashed request; the UPDATE is the arbiter"""
        threshold = datetime.now(timezone.utc) - timedelta(seconds=self._stale_seconds)
        result = await session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == key.value,
                IdempotencyRecord.response_status_code.is_(None),
                IdempotencyRecord.created_at < threshold,
            )
            .values(created_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def save_response(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        key: IdempotencyKey,
        response: Response,
    ) -> Response:
        """
        Store the response in the reserved row and commit the transaction.

        Raises:
            IdempotencyReservationLostError: the row is no longer started;
                the transaction is rolled back instead of committed.
        """
        result = await session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == key.value,
                IdempotencyRecord.response_status_code.is_(None),
            )
            .values(
                response_status_code=response.status_code,
                response_headers=serialize_headers(response),
                response_body=bytes(getattr(response, "body", b"")),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.warning(
                "Idempotency reservation lost before the response was saved",
                extra_data={"user_id": str(user_id), "idempotency_key": key.value},
            )
            raise IdempotencyReservationLostError(key.value)

        await session.commit()
        return response

    async def cleanup_expired(self, older_than_days: int | None = None) -> int:
        """Delete completed records past the retention window. Returns the row count."""
        days = older_than_days if older_than_days is not None else settings.IDEMPOTENCY_RETENTION_DAYS
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord)
                .where(
                    IdempotencyRecord.response_status_code.is_not(None),
                    IdempotencyRecord.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "Expired idempotency records removed",
            extra_data={"deleted": result.rowcount, "older_than_days": days},
        )
        return result.rowcount

    async def get_record(self, user_id: uuid.UUID, key: IdempotencyKey) -> IdempotencyRecord | None:
        async with self._session_factory() as session:
            return await session.get(IdempotencyRecord, (user_id, key.value))
