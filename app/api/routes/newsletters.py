"""
Newsletter Admin API Routes
"""
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Form
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies.auth import get_current_admin_id
from app.db.database import get_db, get_session_factory
from app.domain.services.delivery_queue_service import DeliveryQueueService
from app.domain.services.newsletter_service import NewsletterPublishService
from app.domain.services.publish_notifier import PublishNotifier
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_publish_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> NewsletterPublishService:
    return NewsletterPublishService(session_factory)


@router.post(
    "/newsletters",
    status_code=303,
    summary="Publish a newsletter issue",
    description=(
        "Stores the issue and queues one delivery per confirmed subscriber in a single "
        "transaction. Repeating the request with the same idempotency_key returns the "
        "saved response without publishing again."
    ),
    responses={
        303: {"description": "Accepted; redirects to /admin/newsletters"},
        400: {"description": "Invalid idempotency key or content"},
        401: {"description": "Missing or invalid bearer token"},
        409: {"description": "The same key is still being processed, retry later"},
    },
)
async def publish_newsletter(
    background_tasks: BackgroundTasks,
    title: str = Form(""),
    text: str = Form(""),
    html: str = Form(""),
    idempotency_key: str = Form(""),
    user_id: uuid.UUID = Depends(get_current_admin_id),
    service: NewsletterPublishService = Depends(get_publish_service),
) -> Response:
    outcome = await service.publish(
        user_id=user_id,
        title=title,
        text_content=text,
        html_content=html,
        idempotency_key=idempotency_key,
    )
    background_tasks.add_task(
        PublishNotifier.acknowledge,
        user_id,
        outcome.newsletter_issue_id,
        outcome.replayed,
    )
    return outcome.response


@router.get(
    "/newsletters/{issue_id}/deliveries",
    summary="Delivery progress of an issue",
    dependencies=[Depends(get_current_admin_id)],
)
async def get_delivery_report(
    issue_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await DeliveryQueueService(db).issue_delivery_report(issue_id)
    return report.to_dict()
