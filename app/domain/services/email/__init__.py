"""
Email Transport Abstraction Layer

The delivery worker and the subscription flow depend only on
BaseEmailTransport, so the email provider can be swapped without touching
business logic.
"""
from app.domain.services.email.base_transport import BaseEmailTransport
from app.domain.services.email.transport_factory import get_email_transport

__all__ = [
    "BaseEmailTransport",
    "get_email_transport",
]
