"""
Transport Factory - process-wide email transport.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_email_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.email.base_transport import BaseEmailTransport

logger = get_logger(__name__)

_transport: BaseEmailTransport | None = None
_lock = threading.Lock()


def get_email_transport() -> BaseEmailTransport:
    global _transport
    if _transport is None:
        with _lock:
            if _transport is None:
                from app.domain.services.email.http_transport import HttpEmailTransport

                _transport = HttpEmailTransport(circuit_breaker=get_email_circuit_breaker())
                logger.info(
                    "Email transport initialized",
                    extra_data={"transport": _transport.transport_name},
                )
    return _transport


def reset_transport() -> None:
    """Drop the cached transport (tests only)."""
    global _transport
    with _lock:
        _transport = None
