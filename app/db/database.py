"""
Database engine and sessions.

Three ways to get a session:
- get_db: request-scoped session for simple reads and the subscription flow
- get_session_factory: for services that own their transactions (the
  publish coordinator hands a reserved transaction from the idempotency
  store to the issue inserts)
- get_task_session_factory: a loop-local engine for Celery tasks
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def _create_engine(**pool_options) -> AsyncEngine:
    if settings.DATABASE_URL.startswith("sqlite"):
        # SQLite pools take no size options
        pool_options = {}
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        **pool_options,
    )


def _session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = _create_engine()
AsyncSessionLocal = _session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


@asynccontextmanager
async def get_task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Session factory on an engine created for the current event loop.

    asyncpg connections are tied to the loop that opened them; Celery tasks
    each run on a new loop, so the module-level engine cannot be reused.
    The delivery worker opens one session per claim and per resolution,
    hence the pool is sized for its concurrency.
    """
    task_engine = _create_engine(
        pool_size=min(settings.DELIVERY_CONCURRENCY, 20),
        max_overflow=5,
    )
    try:
        yield _session_factory(task_engine)
    finally:
        await task_engine.dispose()
