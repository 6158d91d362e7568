"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- Subscribe and confirm through the public API
- Publish through the admin API
- A delivery worker bound to the test database and the fake email API
"""
import re
import uuid

import pytest

from app.domain.services.delivery_worker import DeliveryWorker

_TOKEN_IN_LINK = re.compile(r"subscription_token=([A-Za-z0-9]{25})")


@pytest.fixture
def subscribe_and_confirm(test_client, fake_email_transport):
    """Run the full double opt-in for one reader; returns the email"""
    async def _run(email: str, name: str = "Reader") -> str:
        response = await test_client.post("/subscriptions", data={"name": name, "email": email})
        assert response.status_code == 200, response.text

        message = fake_email_transport.sent[-1]
        assert message["recipient"] == email
        token = _TOKEN_IN_LINK.search(message["text_body"]).group(1)

        response = await test_client.get(
            "/subscriptions/confirm", params={"subscription_token": token}
        )
        assert response.status_code == 200, response.text
        return email

    return _run


@pytest.fixture
def publish(test_client, admin_headers):
    """POST an issue; returns the response"""
    async def _run(idempotency_key: str, title: str = "Weekly digest", headers: dict | None = None):
        return await test_client.post(
            "/admin/newsletters",
            data={
                "title": title,
                "text": f"{title} - plain text",
                "html": f"<h1>{title}</h1>",
                "idempotency_key": idempotency_key,
            },
            headers=headers or admin_headers,
        )

    return _run


@pytest.fixture
def delivery_report(test_client, admin_headers):
    async def _run(issue_id: uuid.UUID) -> dict:
        response = await test_client.get(
            f"/admin/newsletters/{issue_id}/deliveries", headers=admin_headers
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _run


@pytest.fixture
def delivery_worker(session_factory, fake_email_transport) -> DeliveryWorker:
    """Worker with immediate retries so a scenario can drain the queue in a few batches"""
    return DeliveryWorker(
        session_factory,
        fake_email_transport,
        batch_size=10,
        poll_interval_seconds=0.01,
        queue_options={"retry_base_seconds": 0, "max_attempts": 3},
    )


@pytest.fixture
def newsletter_deliveries(fake_email_transport):
    """Messages sent by the worker, without the confirmation emails"""
    def _messages(title: str) -> list[dict]:
        return [m for m in fake_email_transport.sent if m["subject"] == title]

    return _messages
