"""
Base interface for email transports.
"""
from __future__ import annotations

from abc import ABC, abstractmethod


class BaseEmailTransport(ABC):
    """
    Uniform interface for sending one email.

    Implementations own the HTTP/SDK call, error classification and circuit
    breaking. They do NOT retry: retry policy belongs to the delivery queue.
    """

    @abstractmethod
    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        """
        Send one email.

        Args:
            recipient: Destination address.
            subject: Subject line.
            html_body: HTML part.
            text_body: Plain-text part.

        Raises:
            EmailDeliveryError: the message was not accepted. ``retryable``
                tells the caller whether another attempt may succeed.
        """

    @property
    @abstractmethod
    def transport_name(self) -> str:
        """Transport name for logs."""
