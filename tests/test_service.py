"""Tests for WebhookService wiring and read-side queries."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from support import START, mock_client
from koya.config import Settings
from koya.exceptions import NotFoundError
from koya.models import isoformat_utc
from koya.service import WebhookService
from koya.storage import InMemoryWebhookStorage, QdrantWebhookStorage
from koya.webhooks.signing import sign


async def ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200)


async def unavailable(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503)


class TestCreate:
    """Tests for WebhookService.create."""

    def test_defaults_to_memory_backend(self):
        service = WebhookService.create(Settings(_env_file=None))

        assert isinstance(service.storage, InMemoryWebhookStorage)

    def test_qdrant_backend(self):
        service = WebhookService.create(Settings(_env_file=None, storage_backend="qdrant"))

        assert isinstance(service.storage, QdrantWebhookStorage)

    @pytest.mark.asyncio
    async def test_settings_reach_components(self, storage, clock, make_webhook):
        settings = Settings(_env_file=None, webhook_max_attempts=2, inbound_max_retries=3)
        service = WebhookService.create(
            settings, storage=storage, client=mock_client(unavailable), clock=clock
        )
        webhook = await make_webhook()

        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {})
        clock.advance(minutes=1)
        await service.scheduler.process_retries()
        record = await service.failures.store_failed_webhook("stripe", "charge.failed", {}, "x")

        [delivery] = await storage.list_deliveries(webhook.id)
        assert delivery.max_attempts == 2
        assert delivery.status == "failed"
        assert record.max_retries == 3

    @pytest.mark.asyncio
    async def test_claim_lease_from_settings(self, storage, clock, make_webhook):
        settings = Settings(_env_file=None, retry_claim_lease_seconds=60)
        service = WebhookService.create(
            settings, storage=storage, client=mock_client(unavailable), clock=clock
        )
        webhook = await make_webhook()
        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {})
        clock.advance(minutes=1)
        service.dispatcher.attempt_delivery = AsyncMock(side_effect=RuntimeError("crash"))

        await service.scheduler.process_retries()

        [delivery] = await storage.list_deliveries(webhook.id)
        assert delivery.next_retry_at == clock() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_inbound_handlers(self, storage, clock):
        handle_stripe = AsyncMock()
        service = WebhookService.create(
            Settings(_env_file=None),
            storage=storage,
            handlers={"stripe": handle_stripe},
            clock=clock,
        )
        stripe = await service.failures.store_failed_webhook("stripe", "invoice.paid", {}, "x")
        retell = await service.failures.store_failed_webhook("retell", "call_ended", {}, "x")

        for _ in range(6):
            clock.advance(minutes=10)
            await service.processor.process_retries()

        handle_stripe.assert_awaited_once_with("invoice.paid", {})
        assert (await service.failures.get(stripe.id)).status == "success"
        unhandled = await service.failures.get(retell.id)
        assert unhandled.status == "pending"
        assert unhandled.retry_count == 0


class TestLifecycle:
    """Tests for initialize/close."""

    @pytest.mark.asyncio
    async def test_memory_backend_needs_no_setup(self, storage):
        async with WebhookService.create(Settings(_env_file=None), storage=storage) as service:
            assert service.storage is storage

    @pytest.mark.asyncio
    async def test_qdrant_backend_is_initialized_and_closed(self):
        storage = QdrantWebhookStorage(prefix="test")
        service = WebhookService.create(Settings(_env_file=None), storage=storage)

        with (
            patch.object(storage, "initialize", AsyncMock()) as initialize,
            patch.object(storage, "close", AsyncMock()) as close,
        ):
            async with service:
                initialize.assert_awaited_once()
            close.assert_awaited_once()


class TestDeliveryQueries:
    """Tests for delivery history and stats."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, storage, clock, make_webhook):
        service = WebhookService.create(
            Settings(_env_file=None), storage=storage, client=mock_client(ok), clock=clock
        )
        webhook = await make_webhook()
        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {"n": 1})
        clock.advance(minutes=1)
        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {"n": 2})

        history = await service.get_delivery_history(webhook.id)

        assert [d.created_at for d in history] == [START + timedelta(minutes=1), START]

    @pytest.mark.asyncio
    async def test_unknown_webhook(self, storage):
        service = WebhookService.create(Settings(_env_file=None), storage=storage)

        with pytest.raises(NotFoundError):
            await service.get_delivery_history("whk_missing")
        with pytest.raises(NotFoundError):
            await service.get_delivery_stats("whk_missing")

    @pytest.mark.asyncio
    async def test_stats(self, storage, clock, make_webhook):
        service = WebhookService.create(
            Settings(_env_file=None), storage=storage, client=mock_client(ok), clock=clock
        )
        webhook = await make_webhook()
        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {})
        await service.dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        stats = await service.get_delivery_stats(webhook.id)

        assert stats.total == 2
        assert stats.success_rate == 100.0


class TestSignatureVerification:
    """Tests for the configured replay window."""

    def test_uses_configured_tolerance(self, clock):
        service = WebhookService.create(
            Settings(_env_file=None, signature_tolerance_seconds=60), clock=clock
        )
        timestamp = isoformat_utc(START)
        signature = sign('{"event":"call.started"}', "whsec_x", timestamp)

        clock.advance(seconds=60)
        assert service.verify_signature('{"event":"call.started"}', signature, "whsec_x", timestamp)

        clock.advance(seconds=1)
        assert not service.verify_signature(
            '{"event":"call.started"}', signature, "whsec_x", timestamp
        )

    def test_stripe_header(self, clock):
        service = WebhookService.create(Settings(_env_file=None), clock=clock)
        unix = str(int(START.timestamp()))
        digest = sign("{}", "whsec_stripe", unix)
        header = f"t={unix},v1={digest}"

        assert service.verify_stripe_signature("{}", header, "whsec_stripe")
        assert not service.verify_stripe_signature("{}", header, "whsec_other")
