"""
HTTP Email Transport - BaseEmailTransport over a Postmark-style JSON API.

POST {EMAIL_API_BASE_URL}/email with the server token in a header.
"""
from __future__ import annotations

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import EmailDeliveryError, CircuitBreakerOpenError
from app.core.logging import get_logger
from app.core.validation import EmailValidator
from app.domain.services.email.base_transport import BaseEmailTransport

logger = get_logger(__name__)

# Throttling is the only 4xx worth another attempt
_RETRYABLE_CLIENT_STATUS_CODES = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in _RETRYABLE_CLIENT_STATUS_CODES


def _counts_against_api(error: BaseException) -> bool:
    """A permanent rejection is an answer from a healthy API"""
    return getattr(error, "retryable", True)


class HttpEmailTransport(BaseEmailTransport):
    """
    Single-attempt sender with a circuit breaker.

    Classification:
    - 2xx: accepted
    - 5xx, 408, 429, timeout, network error, open circuit: retryable
    - any other status: permanent
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        sender: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = (base_url or settings.EMAIL_API_BASE_URL).rstrip("/")
        self._api_token = api_token if api_token is not None else settings.EMAIL_API_TOKEN
        self._sender = sender or settings.EMAIL_SENDER
        self._timeout_seconds = timeout_seconds or settings.EMAIL_TIMEOUT_SECONDS

    @property
    def transport_name(self) -> str:
        return "http"

    async def _post(self, payload: dict) -> None:
        """One request to the email API; any non-2xx raises EmailDeliveryError"""
        recipient_masked = EmailValidator.mask(payload["To"])

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(
                    f"{self._base_url}/email",
                    json=payload,
                    headers={"X-Postmark-Server-Token": self._api_token},
                )
        except httpx.TimeoutException:
            logger.warning(
                "Email API timeout",
                extra_data={"recipient": recipient_masked, "timeout": self._timeout_seconds},
            )
            raise EmailDeliveryError(
                message="email API timeout",
                retryable=True,
                details={"timeout": True},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "Email API network error",
                extra_data={"recipient": recipient_masked, "error": str(exc)},
            )
            raise EmailDeliveryError(
                message=f"email API network error: {str(exc)}",
                retryable=True,
                details={"network_error": True},
            )

        if response.is_success:
            return

        retryable = is_retryable_status(response.status_code)
        logger.warning(
            "Email API rejected message",
            extra_data={
                "recipient": recipient_masked,
                "status_code": response.status_code,
                "retryable": retryable,
            },
        )
        raise EmailDeliveryError.from_response(response, retryable=retryable)

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        payload = {
            "From": self._sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }

        try:
            await self._circuit_breaker.execute(self._post, payload, is_failure=_counts_against_api)
        except CircuitBreakerOpenError as exc:
            raise EmailDeliveryError(
                message="email API circuit open",
                retryable=True,
                details={"retry_after_seconds": exc.details.get("retry_after_seconds")},
            ) from exc
