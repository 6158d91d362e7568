"""
Subscription Token Model - confirmation tokens sent by email
"""
import secrets
import string

from sqlalchemy import Column, String, ForeignKey, Uuid

from app.db.database import Base

TOKEN_LENGTH = 25
_TOKEN_ALPHABET = string.ascii_letters + string.digits


class SubscriptionToken(Base):
    __tablename__ = "subscription_tokens"

    subscription_token = Column(String(TOKEN_LENGTH), primary_key=True)
    subscriber_id = Column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @staticmethod
    def generate() -> str:
        """25 random alphanumeric characters from a CSPRNG"""
        return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
