"""
JWT authentication for admin endpoints.

Tokens are issued by the identity provider in front of this service (or by
scripts/create_admin_token.py for local use). The ``sub`` claim carries the
admin user id; it scopes idempotency records.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Tolerated clock skew between the token issuer and this service
_LEEWAY_SECONDS = 30


class TokenPayload(BaseModel):
    """JWT token contents"""
    sub: uuid.UUID
    exp: int  # Unix timestamp


def create_access_token(user_id: uuid.UUID, expires_minutes: int | None = None) -> str:
    """Create an admin JWT"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not set, cannot create a token")
    minutes = expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "sub": str(user_id),
        "exp": int(expire.timestamp()),
    }
    encoded = pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    logger.info("JWT token created", extra_data={"user_id": str(user_id)})
    return encoded


def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify a JWT; None when invalid, expired or malformed"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            leeway=_LEEWAY_SECONDS,
            options={"require": ["sub", "exp"]},
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
