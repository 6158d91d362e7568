"""
Tests for Settings validation - app/core/config.py
"""
import warnings

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def _settings(**overrides) -> Settings:
    values = {"JWT_SECRET_KEY": "secret", "EMAIL_API_TOKEN": "token"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestDatabaseUrl:

    @pytest.mark.unit
    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db:5432/news", "postgresql+asyncpg://u:p@db:5432/news"),
        ("postgresql://u:p@db:5432/news", "postgresql+asyncpg://u:p@db:5432/news"),
        ("postgresql+asyncpg://u:p@db:5432/news", "postgresql+asyncpg://u:p@db:5432/news"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ])
    def test_converted_to_async_driver(self, url, expected):
        assert _settings(DATABASE_URL=url).DATABASE_URL == expected


class TestBaseUrl:

    @pytest.mark.unit
    def test_trailing_slash_removed(self):
        assert _settings(BASE_URL="https://news.example.com/").BASE_URL == "https://news.example.com"


class TestWorkerSettings:

    @pytest.mark.unit
    @pytest.mark.parametrize("field", [
        "DELIVERY_MAX_ATTEMPTS",
        "DELIVERY_BATCH_SIZE",
        "DELIVERY_CONCURRENCY",
        "DELIVERY_CLAIM_TIMEOUT_SECONDS",
    ])
    def test_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: 0})

    @pytest.mark.unit
    def test_base_delay_above_cap_rejected(self):
        with pytest.raises(ValidationError):
            _settings(DELIVERY_RETRY_BASE_SECONDS=600, DELIVERY_MAX_BACKOFF_SECONDS=300)

    @pytest.mark.unit
    def test_defaults(self):
        s = _settings()

        assert s.DELIVERY_MAX_ATTEMPTS == 5
        assert s.DELIVERY_MAX_BACKOFF_SECONDS == 300
        assert s.IDEMPOTENCY_RETENTION_DAYS == 7


class TestProductionSettings:

    @pytest.mark.unit
    def test_empty_jwt_secret_fails_outside_debug(self):
        with pytest.raises(ValidationError, match="JWT_SECRET_KEY"):
            _settings(JWT_SECRET_KEY="", DEBUG=False)

    @pytest.mark.unit
    def test_empty_jwt_secret_warns_in_debug(self):
        with pytest.warns(UserWarning, match="JWT_SECRET_KEY"):
            _settings(JWT_SECRET_KEY="", DEBUG=True)

    @pytest.mark.unit
    def test_empty_email_token_warns(self):
        with pytest.warns(UserWarning, match="EMAIL_API_TOKEN"):
            _settings(EMAIL_API_TOKEN="", DEBUG=False)

    @pytest.mark.unit
    def test_complete_settings_do_not_warn(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            _settings()
