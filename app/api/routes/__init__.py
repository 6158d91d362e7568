"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.newsletters import router as newsletters_router
from app.api.routes.subscriptions import router as subscriptions_router

router = APIRouter()

router.include_router(newsletters_router, prefix="/admin", tags=["newsletters"])
router.include_router(subscriptions_router, prefix="/subscriptions", tags=["subscriptions"])
