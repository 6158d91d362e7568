"""
FastAPI dependency identifying the admin behind a request

Usage:
    @router.post("/newsletters")
    async def publish(user_id: uuid.UUID = Depends(get_current_admin_id)):
        ...
"""
import uuid

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.auth import verify_token
from app.core.exceptions import UnauthorizedException
from app.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_admin_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> uuid.UUID:
    """Admin user id from the bearer token; 401 when missing or invalid"""
    if credentials is None:
        raise UnauthorizedException("Missing bearer token")

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise UnauthorizedException("Invalid or expired token")

    return token_data.sub
