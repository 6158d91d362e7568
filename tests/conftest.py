"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions and session factories (async, in-memory SQLite)
- Mock external services (email API, Redis)
- Test data factories (subscribers, newsletter issues, delivery tasks)
"""
# JWT_SECRET_KEY must be set before importing app: the settings validator requires it when DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import settings
from app.core.exceptions import EmailDeliveryError
from app.db.database import Base, get_db, get_session_factory
from app.db.models.delivery_task import DeliveryTask, DeliveryTaskStatus
from app.db.models.newsletter_issue import NewsletterIssue
from app.db.models.subscription import Subscription, SubscriptionStatus
from app.domain.services.email import BaseEmailTransport, get_email_transport
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# No custom event_loop fixture: pytest-asyncio handles it with
# asyncio_mode=auto and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for services that open their own transactions"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over a file-backed SQLite database.

    Unlike the StaticPool engine every session gets its own connection, so
    concurrent transactions really overlap and contend for the write lock.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_factory, fake_email_transport):
    """Create test client with database and email transport overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_email_transport] = lambda: fake_email_transport

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Mock External Services
# ============================================================================

class FakeEmailTransport(BaseEmailTransport):
    """In-memory email transport recording every send.

    ``fail_with`` makes every send raise EmailDeliveryError; ``fail_for``
    limits the failure to the given recipients.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.attempts: list[str] = []
        self.fail_with: EmailDeliveryError | None = None
        self.fail_for: set[str] | None = None

    @property
    def transport_name(self) -> str:
        return "fake"

    async def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> None:
        self.attempts.append(recipient)
        if self.fail_with is not None and (self.fail_for is None or recipient in self.fail_for):
            raise self.fail_with
        self.sent.append({
            "recipient": recipient,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
        })

    def recipients(self) -> list[str]:
        return [m["recipient"] for m in self.sent]


@pytest.fixture
def fake_email_transport() -> FakeEmailTransport:
    return FakeEmailTransport()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def subscriber_factory(db_session: AsyncSession):
    """Factory for creating test subscribers"""
    async def _create_subscriber(
        email: str = "reader@example.com",
        name: str = "Test Reader",
        status: SubscriptionStatus = SubscriptionStatus.CONFIRMED,
    ) -> Subscription:
        subscriber = Subscription(
            id=uuid.uuid4(),
            email=email,
            name=name,
            status=status,
            subscribed_at=datetime.now(timezone.utc),
        )
        db_session.add(subscriber)
        await db_session.commit()
        await db_session.refresh(subscriber)
        return subscriber

    return _create_subscriber


@pytest.fixture
def issue_factory(db_session: AsyncSession):
    """Factory for creating newsletter issues with their delivery tasks"""
    async def _create_issue(
        recipients: list[str] | tuple[str, ...] = (),
        title: str = "Weekly digest",
        text_content: str = "Hello readers",
        html_content: str = "<p>Hello readers</p>",
    ) -> NewsletterIssue:
        issue = NewsletterIssue(
            newsletter_issue_id=uuid.uuid4(),
            title=title,
            text_content=text_content,
            html_content=html_content,
        )
        db_session.add(issue)
        await db_session.flush()
        for email in recipients:
            db_session.add(DeliveryTask(
                newsletter_issue_id=issue.newsletter_issue_id,
                subscriber_email=email,
            ))
        await db_session.commit()
        await db_session.refresh(issue)
        return issue

    return _create_issue


@pytest.fixture
def load_tasks(session_factory):
    """Read delivery tasks through a fresh session, ordered by email"""
    async def _load(newsletter_issue_id: uuid.UUID | None = None) -> list[DeliveryTask]:
        async with session_factory() as session:
            query = select(DeliveryTask).order_by(DeliveryTask.subscriber_email)
            if newsletter_issue_id is not None:
                query = query.where(DeliveryTask.newsletter_issue_id == newsletter_issue_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    return _load


@pytest.fixture
def task_statuses(load_tasks):
    """Map subscriber email -> delivery status"""
    async def _statuses(newsletter_issue_id: uuid.UUID | None = None) -> dict[str, DeliveryTaskStatus]:
        return {t.subscriber_email: t.status for t in await load_tasks(newsletter_issue_id)}

    return _statuses


# ============================================================================
# Admin identity
# ============================================================================

@pytest.fixture
def admin_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def admin_headers(admin_id: uuid.UUID) -> dict[str, str]:
    """Authorization header with a valid admin JWT"""
    return {"Authorization": f"Bearer {create_access_token(admin_id)}"}


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers and the cached email transport between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    from app.domain.services.email.transport_factory import reset_transport
    CircuitBreaker.reset_all()
    reset_transport()
    yield
    CircuitBreaker.reset_all()
    reset_transport()


class FakeRedis:
    """In-memory Redis replacement: key/value store plus recorded Pub/Sub messages."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis in every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.publish_notifier.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# JWT secret for admin endpoints
# ============================================================================

_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(autouse=True)
def set_jwt_secret():
    """Pin the JWT settings for admin endpoint tests"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 480):
        yield


# No autouse cleanup for idempotency records is needed: every test gets a
# fresh in-memory DB through the function-scoped async_engine.
