"""
Database Models
"""
from app.db.models.subscription import Subscription
from app.db.models.subscription_token import SubscriptionToken
from app.db.models.newsletter_issue import NewsletterIssue
from app.db.models.idempotency_record import IdempotencyRecord
from app.db.models.delivery_task import DeliveryTask

__all__ = [
    "Subscription",
    "SubscriptionToken",
    "NewsletterIssue",
    "IdempotencyRecord",
    "DeliveryTask",
]
