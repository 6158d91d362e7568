"""
Newsletter Service - Main FastAPI Application

The delivery worker does not run here; see app/workers (Celery beat) and
scripts/run_delivery_worker.py.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.core.redis_client import close_redis
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.db import models  # noqa: F401  registers every table on Base.metadata

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "newsletters",
        "description": "Idempotent publishing of newsletter issues and delivery progress.",
    },
    {"name": "subscriptions", "description": "Subscribe and confirm by email."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(
        "Application started",
        extra_data={"app_name": settings.APP_NAME, "database": engine.dialect.name},
    )

    yield

    await close_redis()
    await engine.dispose()
    logger.info("Application stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Newsletter subscription backend: idempotent publishing with a transactional "
        "outbox and a background delivery worker."
    ),
    openapi_tags=_OPENAPI_TAGS,
    lifespan=lifespan,
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router)


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. Dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks DB, Redis, the email API and the Celery broker concurrently.",
    responses={
        200: {"description": "All dependencies are available"},
        503: {"description": "At least one dependency is unavailable"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
