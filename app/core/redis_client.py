"""
Redis Client - async client for admin notifications and readiness checks.

One client per event loop: the API process runs a single loop for its whole
life, while every Celery task runs on a fresh loop (see app.workers.tasks),
and a redis.asyncio connection pool cannot be shared between loops.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_client: aioredis.Redis | None = None
_client_loop: asyncio.AbstractEventLoop | None = None


def mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379/0 -> redis://:****@host:6379/0"""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@", 1)


async def get_redis() -> aioredis.Redis:
    """Client bound to the running event loop, created on first use"""
    global _client, _client_loop
    loop = asyncio.get_running_loop()

    if _client is not None and _client_loop is loop:
        return _client

    if _client is not None:
        # The owning loop is gone or elsewhere; its pool cannot be closed from here
        logger.debug("Discarding Redis client bound to another event loop")

    # Assigned before the first await so concurrent callers share one client
    _client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    _client_loop = loop
    await _client.ping()
    logger.info(
        "Redis client initialized",
        extra_data={"url": mask_redis_url(settings.REDIS_URL)},
    )
    return _client


async def close_redis() -> None:
    """Close the client of the running loop; no-op when there is none"""
    global _client, _client_loop
    client, _client, _client_loop = _client, None, None
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
