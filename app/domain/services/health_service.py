"""
Health check service - dependency checks (DB, Redis, email API, Celery broker).

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: every external dependency answers
"""
import asyncio
from typing import Any, Awaitable

import httpx
import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_email_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Per check; checks run concurrently so this also bounds the whole probe
_CHECK_TIMEOUT_SECONDS = 5.0

# Sanitised messages, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_EMAIL_API = "error: email_api_unavailable"
_ERROR_EMAIL_CIRCUIT_OPEN = "error: email_api_circuit_open"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    """Lightweight query against the database"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_email_api() -> str:
    """Email API reachability; an open circuit counts as unavailable"""
    if get_email_circuit_breaker().is_open:
        return _ERROR_EMAIL_CIRCUIT_OPEN
    try:
        async with httpx.AsyncClient(timeout=_CHECK_TIMEOUT_SECONDS) as client:
            response = await client.get(settings.EMAIL_API_BASE_URL)
        if response.status_code >= 500:
            logger.warning(
                "Email API returned an unhealthy status",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_EMAIL_API
        return _CHECK_OK
    except Exception as e:
        logger.warning("Email API health check failed", extra_data={"error": str(e)})
        return _ERROR_EMAIL_API


async def _check_celery() -> str:
    """Ping the Celery broker (Redis)"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _bounded(name: str, check: Awaitable[str]) -> str:
    try:
        return await asyncio.wait_for(check, timeout=_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Health check timed out", extra_data={"check": name})
        return f"error: {name}_timeout"


async def check_readiness() -> dict[str, Any]:
    """
    Readiness check of every external dependency.

    Returns a dict with the overall status and one entry per dependency:
    - status: "healthy" when everything answers, "degraded" otherwise
    - db / redis / email_api / celery: "ok" or "error: ..."
    """
    names = ("db", "redis", "email_api", "celery")
    results = await asyncio.gather(
        _bounded("db", _check_db()),
        _bounded("redis", _check_redis()),
        _bounded("email_api", _check_email_api()),
        _bounded("celery", _check_celery()),
    )
    checks = dict(zip(names, results))

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED, **checks}
