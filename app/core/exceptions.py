"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"

    # Idempotency errors (2xxx)
    IDEMPOTENCY_KEY_INVALID = "ERR_2001"
    IDEMPOTENCY_IN_PROGRESS = "ERR_2002"
    IDEMPOTENCY_RESERVATION_LOST = "ERR_2003"

    # Persistence errors (3xxx)
    PERSISTENCE_ERROR = "ERR_3001"

    # Subscription errors (4xxx)
    SUBSCRIPTION_TOKEN_INVALID = "ERR_4001"
    SUBSCRIPTION_TOKEN_UNKNOWN = "ERR_4002"

    # External service errors (5xxx)
    EMAIL_DELIVERY_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        # Extra response headers set by the exception handler
        self.headers: dict[str, str] = {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class UnauthorizedException(AppException):
    """Raised when the caller cannot be identified"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )
        self.headers["WWW-Authenticate"] = "Bearer"


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class IdempotencyInProgressError(AppException):
    """
    Raised when another request holds the same idempotency key and did not
    finish within the bounded wait. The client should retry later.
    """

    RETRY_AFTER_SECONDS = 1

    def __init__(self, idempotency_key: str, waited_seconds: float):
        super().__init__(
            message="A request with this idempotency key is still being processed, retry later",
            error_code=ErrorCode.IDEMPOTENCY_IN_PROGRESS,
            status_code=409,
            details={
                "idempotency_key": idempotency_key,
                "waited_seconds": round(waited_seconds, 3),
            }
        )
        self.headers["Retry-After"] = str(self.RETRY_AFTER_SECONDS)


class IdempotencyReservationLostError(AppException):
    """
    Raised when the reserved row stopped being "started" before the response
    was saved. Nothing from the request was committed; a retry replays the
    response that the other request saved.
    """

    def __init__(self, idempotency_key: str):
        super().__init__(
            message="The idempotency key was completed by another request, retry to get its response",
            error_code=ErrorCode.IDEMPOTENCY_RESERVATION_LOST,
            status_code=409,
            details={"idempotency_key": idempotency_key},
        )
        self.headers["Retry-After"] = str(IdempotencyInProgressError.RETRY_AFTER_SECONDS)


class PersistenceError(AppException):
    """Raised when a transaction fails; nothing from it was committed"""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(
            message=f"Failed to {operation}",
            error_code=ErrorCode.PERSISTENCE_ERROR,
            status_code=500,
            details={"operation": operation, "cause": type(cause).__name__}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class EmailDeliveryError(ExternalServiceException):
    """
    Raised by an email transport when a message was not accepted.

    ``retryable`` is the only distinction the delivery worker needs: a
    retryable failure is requeued with backoff, anything else is permanent.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="email",
            message=f"Email API error: {message}",
            error_code=ErrorCode.EMAIL_DELIVERY_ERROR,
            details=details
        )
        self.retryable = retryable
        self.details["retryable"] = retryable

    @classmethod
    def from_response(
        cls,
        response: Any,
        *,
        retryable: bool,
        max_response_chars: int = 500
    ) -> "EmailDeliveryError":
        """Build the error from an HTTP response (status code plus a truncated body)"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"email API returned status {status_code}",
            retryable=retryable,
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class InvalidStateTransitionError(AppException):
    """Raised when a delivery task status transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, task_ref: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=400,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "task": task_ref
            }
        )
