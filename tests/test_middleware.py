"""
Tests for app/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation ID propagation
- RequestLoggingMiddleware: request logging without tokens or raw addresses
- Exception handlers: AppException mapping and the generic 500
- SecurityHeadersMiddleware: HSTS, CSP and nosniff
- setup_middleware: the full stack through the application
"""
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    _safe_query_params,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import (
    AppException,
    ErrorCode,
    IdempotencyInProgressError,
    UnauthorizedException,
    ValidationException,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("test failure")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """Minimal Starlette app with the given middleware"""
    app = Starlette(routes=[Route("/test", _hello), Route("/error", _error)])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _request(path: str, query_string: bytes = b"") -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": query_string,
        "headers": [],
    })


# ============================================================================
# _safe_query_params
# ============================================================================


class TestSafeQueryParams:

    @pytest.mark.unit
    def test_subscription_token_is_redacted(self) -> None:
        params = _safe_query_params(
            _request("/subscriptions/confirm", b"subscription_token=abcdefghijklmnopqrstuvwxy")
        )
        assert params == {"subscription_token": "***"}

    @pytest.mark.unit
    def test_email_is_masked(self) -> None:
        params = _safe_query_params(_request("/x", b"email=reader%40example.com"))
        assert params["email"] == "r***@example.com"

    @pytest.mark.unit
    def test_plain_values_unchanged(self) -> None:
        params = _safe_query_params(_request("/x", b"page=2"))
        assert params == {"page": "2"}


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "publish-42"})
            assert response.headers["x-correlation-id"] == "publish-42"

    @pytest.mark.unit
    def test_malformed_correlation_id_is_replaced(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "bad id; " + "x" * 100})
            assert response.headers["x-correlation-id"] != "bad id"
            assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            id1 = client.get("/test").headers["x-correlation-id"]
            id2 = client.get("/test").headers["x-correlation-id"]
            assert id1 != id2


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    @staticmethod
    def _mock_request(path: str) -> AsyncMock:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = path
        return mock_request

    @pytest.mark.asyncio
    async def test_handles_app_exception(self) -> None:
        exc = AppException(
            message="NewsletterIssue not found",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"identifier": "abc"},
        )

        response = await app_exception_handler(self._mock_request("/admin/newsletters/abc/deliveries"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert b"ERR_1002" in response.body

    @pytest.mark.asyncio
    async def test_validation_exception_is_400_with_field(self) -> None:
        exc = ValidationException("Invalid email address", field="email")

        response = await app_exception_handler(self._mock_request("/subscriptions"), exc)

        assert response.status_code == 400
        assert b'"field":"email"' in response.body

    @pytest.mark.asyncio
    async def test_in_progress_carries_retry_after(self) -> None:
        exc = IdempotencyInProgressError("key-1", waited_seconds=5.0)

        response = await app_exception_handler(self._mock_request("/admin/newsletters"), exc)

        assert response.status_code == 409
        assert response.headers["retry-after"] == "1"

    @pytest.mark.asyncio
    async def test_unauthorized_carries_bearer_challenge(self) -> None:
        exc = UnauthorizedException("Missing bearer token")

        response = await app_exception_handler(self._mock_request("/admin/newsletters"), exc)

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"


class TestGenericExceptionHandler:

    @pytest.mark.asyncio
    async def test_handles_unexpected_exception(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/admin/newsletters"

        response = await generic_exception_handler(mock_request, RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.asyncio
    async def test_does_not_leak_internal_details(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/admin/newsletters"
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(mock_request, exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_all_headers_when_not_debug(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert "upgrade-insecure-requests" in response.headers["content-security-policy"]
            assert "includeSubDomains" in response.headers["strict-transport-security"]
            assert response.headers["referrer-policy"] == "no-referrer"

    @pytest.mark.unit
    def test_no_hsts_csp_in_debug(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers
            assert response.headers["x-content-type-options"] == "nosniff"
            assert response.headers["referrer-policy"] == "no-referrer"


# ============================================================================
# setup_middleware
# ============================================================================


class TestSetupMiddleware:

    @pytest.mark.asyncio
    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_headers_on_error_responses(self, test_client) -> None:
        """401 from an admin endpoint still goes through the whole stack"""
        response = await test_client.post("/admin/newsletters", data={"title": "x"})

        assert response.status_code == 401
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
