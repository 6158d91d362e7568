"""
Domain Services
"""
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.newsletter_service import NewsletterPublishService
from app.domain.services.delivery_queue_service import DeliveryQueueService
from app.domain.services.delivery_worker import DeliveryWorker
from app.domain.services.subscription_service import SubscriptionService
from app.domain.services.subscriber_directory import SubscriberDirectory
from app.domain.services.publish_notifier import PublishNotifier

__all__ = [
    "IdempotencyService",
    "NewsletterPublishService",
    "DeliveryQueueService",
    "DeliveryWorker",
    "SubscriptionService",
    "SubscriberDirectory",
    "PublishNotifier",
]
