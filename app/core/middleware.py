"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (tokens redacted, email addresses masked)
- Global error handling
- Security headers
"""
import re
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode
from app.core.validation import EmailValidator

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Client supplied IDs end up in every log line of the request
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

# Query parameters that must never reach the logs verbatim
_SENSITIVE_QUERY_PARAMS = frozenset({"subscription_token", "token"})

# Probed every few seconds by the platform
_QUIET_PATHS = frozenset({"/health", "/health/ready"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to the request, echoing a well-formed client ID"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        incoming = request.headers.get(CORRELATION_HEADER)
        if incoming and not _VALID_CORRELATION_ID.match(incoming):
            incoming = None
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def _safe_query_params(request: Request) -> dict[str, str]:
    """Query params with tokens redacted and email addresses masked"""
    safe = {}
    for name, value in request.query_params.items():
        if name in _SENSITIVE_QUERY_PARAMS:
            safe[name] = "***"
        elif "@" in value:
            safe[name] = EmailValidator.mask(value)
        else:
            safe[name] = value
    return safe


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, written when it finishes"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.perf_counter()
        path = request.url.path
        extra = {
            "method": request.method,
            "path": path,
            "query_params": _safe_query_params(request),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            extra["duration_seconds"] = round(time.perf_counter() - started, 4)
            extra["error"] = str(e)
            logger.error(f"{request.method} {path} failed", extra_data=extra, exc_info=True)
            raise

        extra["status_code"] = response.status_code
        extra["duration_seconds"] = round(time.perf_counter() - started, 4)
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif path in _QUIET_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log(f"{request.method} {path} {response.status_code}", extra_data=extra)
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Render an AppException as ``{"error": {...}}`` with its status and headers"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={**exc.headers, CORRELATION_HEADER: get_correlation_id()},
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Anything unexpected is a 500 without internal details"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={CORRELATION_HEADER: get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    Confirmation links carry the subscription token in the query string, so
    Referrer-Policy is always no-referrer. HSTS and the CSP
    upgrade-insecure-requests directive are skipped in DEBUG so local HTTP
    development keeps working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._headers = {
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "no-referrer",
        }
        if not debug:
            self._headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            self._headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)
        response.headers.update(self._headers)
        return response


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # The last middleware added is the outermost.
    # Request order: SecurityHeaders -> CorrelationId -> RequestLogging -> app
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
