"""
Circuit Breaker

Stops the delivery worker from hammering the email API while it is down.
An open circuit fails fast with CircuitBreakerOpenError, which the worker
treats as a retryable delivery failure.

Only failures that say something about the health of the service count:
callers pass ``is_failure`` to decide, e.g. a rejected recipient address is
an answer from a healthy API, not an outage.
"""
import inspect
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.config import settings
from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # requests pass through
    OPEN = "open"            # requests blocked
    HALF_OPEN = "half_open"  # probing for recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5          # consecutive failures before opening
    success_threshold: int = 2          # half-open successes before closing
    timeout_seconds: float = 30.0       # open time before probing
    half_open_max_calls: int = 3        # probes allowed while half-open


def _always(_: BaseException) -> bool:
    return True


class CircuitBreaker:
    """
    Per-service circuit breaker.

    Instances are process-wide singletons keyed by service name. State is
    guarded by a threading.Lock: Celery runs every batch on a fresh event
    loop, so an asyncio lock would not survive between tasks.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._probes_started = 0
        self._opened_at = 0.0

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        with cls._instances_lock:
            breaker = cls._instances.get(service_name)
            if breaker is None:
                breaker = cls._instances[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _set_state(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._probes_started = 0
            self._probe_successes = 0
        else:
            self._failures = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' is {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def can_execute(self) -> bool:
        """Admit a call; moves OPEN to HALF_OPEN once the timeout has passed"""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._probes_started >= self.config.half_open_max_calls:
                    return False
                self._probes_started += 1

            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.debug(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failures >= self.config.failure_threshold
            ):
                self._set_state(CircuitState.OPEN)

    def get_retry_after(self) -> float:
        """Seconds until the next probe is admitted; 0.0 unless open"""
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._opened_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    async def execute(
        self,
        func: Callable[P, Awaitable[T] | T],
        *args: P.args,
        is_failure: Callable[[BaseException], bool] = _always,
        **kwargs: P.kwargs
    ) -> T:
        """
        Run ``func`` under the breaker.

        An exception for which ``is_failure`` returns False is re-raised
        without being counted, and the call counts as a success.

        Raises:
            CircuitBreakerOpenError: the circuit is open, ``func`` was not called
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if is_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise

        self.record_success()
        return result


def get_email_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker guarding the outbound email API"""
    return CircuitBreaker.get_instance(
        "email",
        CircuitBreakerConfig(
            failure_threshold=settings.EMAIL_CIRCUIT_FAILURE_THRESHOLD,
            success_threshold=2,
            timeout_seconds=settings.EMAIL_CIRCUIT_RESET_SECONDS,
        ),
    )
