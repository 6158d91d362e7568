"""
Tests for admin JWT handling - app/core/auth.py
"""
import time
import uuid
from unittest.mock import patch

import jwt as pyjwt
import pytest

from app.core.auth import create_access_token, verify_token
from app.core.config import settings


class TestCreateAccessToken:

    @pytest.mark.unit
    def test_round_trip(self):
        user_id = uuid.uuid4()

        payload = verify_token(create_access_token(user_id))

        assert payload is not None
        assert payload.sub == user_id
        assert payload.exp > time.time()

    @pytest.mark.unit
    def test_custom_expiry(self):
        token = create_access_token(uuid.uuid4(), expires_minutes=1)

        payload = verify_token(token)

        assert payload.exp <= time.time() + 61

    @pytest.mark.unit
    def test_requires_secret(self):
        with patch.object(settings, "JWT_SECRET_KEY", ""):
            with pytest.raises(ValueError):
                create_access_token(uuid.uuid4())


class TestVerifyToken:

    @pytest.mark.unit
    def test_expired_token(self):
        token = pyjwt.encode(
            {"sub": str(uuid.uuid4()), "exp": int(time.time()) - 120},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
        )

        assert verify_token(token) is None

    @pytest.mark.unit
    def test_token_without_expiry(self):
        token = pyjwt.encode(
            {"sub": str(uuid.uuid4())}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )

        assert verify_token(token) is None

    @pytest.mark.unit
    def test_wrong_secret(self):
        token = pyjwt.encode(
            {"sub": str(uuid.uuid4()), "exp": int(time.time()) + 60},
            "another-secret",
            algorithm=settings.JWT_ALGORITHM,
        )

        assert verify_token(token) is None

    @pytest.mark.unit
    def test_subject_must_be_a_uuid(self):
        token = pyjwt.encode(
            {"sub": "admin", "exp": int(time.time()) + 60},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
        )

        assert verify_token(token) is None

    @pytest.mark.unit
    def test_garbage(self):
        assert verify_token("not.a.token") is None

    @pytest.mark.unit
    def test_empty_secret_rejects_everything(self):
        token = create_access_token(uuid.uuid4())

        with patch.object(settings, "JWT_SECRET_KEY", ""):
            assert verify_token(token) is None
