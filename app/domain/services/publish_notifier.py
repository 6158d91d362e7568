"""
Publish Notifier - fire-and-forget acknowledgment of a newsletter publish.

Publishes a JSON message to the admin's Redis Pub/Sub channel. Runs after
the response has been committed; a failure here must never affect it.
"""
import json
import uuid
from datetime import datetime, timezone

from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

_CHANNEL_PREFIX = "admin_notifications"

ACCEPTED_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


def channel_name(user_id: uuid.UUID) -> str:
    return f"{_CHANNEL_PREFIX}:{user_id}"


class PublishNotifier:

    @staticmethod
    async def acknowledge(
        user_id: uuid.UUID,
        issue_id: uuid.UUID | None,
        replayed: bool,
    ) -> None:
        """Tell the admin the issue was accepted. Errors are logged, never raised."""
        try:
            payload = {
                "type": "newsletter_accepted",
                "message": ACCEPTED_MESSAGE,
                "newsletter_issue_id": str(issue_id) if issue_id else None,
                "replayed": replayed,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            redis = await get_redis()
            await redis.publish(
                channel_name(user_id),
                json.dumps(payload, ensure_ascii=False, default=str),
            )
            logger.info(
                "Publish acknowledgment sent",
                extra_data={"user_id": str(user_id), "replayed": replayed},
            )
        except Exception as e:
            logger.error(
                "Failed to send publish acknowledgment",
                extra_data={"user_id": str(user_id), "error": str(e)},
                exc_info=True,
            )
