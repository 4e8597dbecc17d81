"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add tests directory to path so support can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from support import FixedClock  # noqa: E402

from koya.models import Webhook  # noqa: E402
from koya.storage import InMemoryWebhookStorage  # noqa: E402


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def storage() -> InMemoryWebhookStorage:
    return InMemoryWebhookStorage()


@pytest.fixture
def make_webhook(storage: InMemoryWebhookStorage):
    """Register an endpoint in the in-memory store."""

    async def _make(
        url: str = "https://hooks.example.com/koya",
        *,
        tenant_id: str = "biz_1",
        events: list[str] | None = None,
        secret: str = "whsec_test_secret",
        active: bool = True,
    ) -> Webhook:
        webhook = Webhook(
            tenant_id=tenant_id,
            url=url,
            events=events or ["appointment.booked"],
            secret=secret,
            active=active,
        )
        await storage.store_webhook(webhook)
        return webhook

    return _make
