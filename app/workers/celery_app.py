"""
Celery Application Configuration

Beat drives the delivery queue; the queue itself lives in the database, so
Celery only provides scheduling and a process to run batches in.
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "newsletter_service",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# A batch must finish before the claims it holds expire and another worker reclaims them
_BATCH_TIME_LIMIT = max(settings.DELIVERY_CLAIM_TIMEOUT_SECONDS - 30, 30)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=3600,
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=_BATCH_TIME_LIMIT,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "app.workers.tasks.process_delivery_queue": {"queue": "delivery"},
        "app.workers.tasks.cleanup_expired_idempotency_records": {"queue": "maintenance"},
    },
)

celery_app.conf.beat_schedule = {
    "process-delivery-queue": {
        "task": "app.workers.tasks.process_delivery_queue",
        "schedule": settings.DELIVERY_POLL_INTERVAL_SECONDS,
        # A missed tick is covered by the next one
        "options": {"expires": settings.DELIVERY_POLL_INTERVAL_SECONDS},
    },
    "cleanup-expired-idempotency-records-daily": {
        "task": "app.workers.tasks.cleanup_expired_idempotency_records",
        "schedule": crontab(hour="4", minute="0"),
    },
}
