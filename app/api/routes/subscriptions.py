"""
Subscription API Routes
"""
from fastapi import APIRouter, Depends, Form, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.email import BaseEmailTransport, get_email_transport
from app.domain.services.subscription_service import SubscriptionService

router = APIRouter()


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    transport: BaseEmailTransport = Depends(get_email_transport),
) -> SubscriptionService:
    return SubscriptionService(db, transport)


@router.post("", summary="Subscribe to the newsletter")
async def subscribe(
    name: str = Form(""),
    email: str = Form(""),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    subscriber = await service.subscribe(name=name, email=email)
    return {"status": subscriber.status.value}


@router.get("/confirm", summary="Confirm a subscription")
async def confirm(
    subscription_token: str = Query(""),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    subscriber = await service.confirm(subscription_token)
    return {"status": subscriber.status.value}
