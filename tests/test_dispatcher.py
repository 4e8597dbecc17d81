"""Unit tests for the outbound webhook dispatcher."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from support import START, mock_client
from koya.exceptions import NotFoundError, ValidationError
from koya.storage import InMemoryWebhookStorage
from koya.webhooks.dispatcher import (
    USER_AGENT,
    WebhookDispatcher,
    build_headers,
    dispatch_webhook_event,
)
from koya.webhooks.signing import sign, verify_signature


def ok_handler(status_code: int = 200, text: str = "ok"):
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text=text)

    return handler


def make_dispatcher(storage, clock, handler, **kwargs) -> WebhookDispatcher:
    return WebhookDispatcher(storage, storage, client=mock_client(handler), clock=clock, **kwargs)


class TestBuildHeaders:
    """Tests for per-attempt request headers."""

    def test_contains_required_headers(self):
        headers = build_headers("{}", "secret", "call.started", "2025-03-10T12:00:00.000Z")

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == USER_AGENT == "Koya-Webhooks/1.0"
        assert headers["X-Koya-Event"] == "call.started"
        assert headers["X-Koya-Timestamp"] == "2025-03-10T12:00:00.000Z"
        assert headers["X-Koya-Signature"] == sign("{}", "secret", "2025-03-10T12:00:00.000Z")

    def test_delivery_id_is_fresh_each_call(self):
        first = build_headers("{}", "secret", "call.started", "t")
        second = build_headers("{}", "secret", "call.started", "t")

        assert first["X-Koya-Delivery-Id"] != second["X-Koya-Delivery-Id"]


class TestDispatchEvent:
    """Tests for WebhookDispatcher.dispatch_event."""

    @pytest.mark.asyncio
    async def test_unknown_event_type_raises(self, storage, clock):
        dispatcher = make_dispatcher(storage, clock, ok_handler())

        with pytest.raises(ValidationError):
            await dispatcher.dispatch_event("biz_1", "call.exploded", {})

    @pytest.mark.asyncio
    async def test_no_subscribers_returns_empty_and_creates_nothing(self, storage, clock):
        requests: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        results = await dispatcher.dispatch_event("biz_1", "call.started", {"call_id": "c1"})

        assert results == []
        assert requests == []
        assert await storage.get_due_deliveries(clock(), 100) == []

    @pytest.mark.asyncio
    async def test_only_matching_active_endpoints_receive(self, storage, clock, make_webhook):
        subscribed = await make_webhook("https://a.example.com/hook")
        await make_webhook("https://b.example.com/hook", events=["call.started"])
        await make_webhook("https://c.example.com/hook", active=False)
        await make_webhook("https://d.example.com/hook", tenant_id="biz_2")
        hosts: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        results = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        assert [r.webhook_id for r in results] == [subscribed.id]
        assert hosts == ["a.example.com"]

    @pytest.mark.asyncio
    async def test_request_is_signed_and_verifiable(self, storage, clock, make_webhook):
        webhook = await make_webhook(secret="whsec_abc")
        captured: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        await dispatcher.dispatch_event("biz_1", "appointment.booked", {"appointment_id": "a1"})

        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == str(webhook.url)
        assert request.headers["content-type"] == "application/json"
        assert request.headers["user-agent"] == "Koya-Webhooks/1.0"
        assert request.headers["x-koya-event"] == "appointment.booked"
        assert request.headers["x-koya-delivery-id"]
        assert verify_signature(
            request.content,
            request.headers["x-koya-signature"],
            "whsec_abc",
            request.headers["x-koya-timestamp"],
            now=clock(),
        )
        body = json.loads(request.content)
        assert body == {
            "event": "appointment.booked",
            "timestamp": "2025-03-10T12:00:00.000Z",
            "data": {"appointment_id": "a1"},
        }

    @pytest.mark.asyncio
    async def test_success_and_timeout_are_independent(self, storage, clock, make_webhook):
        """One endpoint answers 200, the other times out."""
        endpoint_a = await make_webhook("https://a.example.com/hook", tenant_id="tenantX")
        endpoint_b = await make_webhook("https://b.example.com/hook", tenant_id="tenantX")

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "a.example.com":
                return httpx.Response(200, text="received")
            raise httpx.ReadTimeout("timed out", request=request)

        dispatcher = make_dispatcher(storage, clock, handler)

        results = await dispatcher.dispatch_event(
            "tenantX",
            "appointment.booked",
            {"appointment_id": "a1", "customer_name": "Jane"},
        )

        assert len(results) == 2
        by_webhook = {r.webhook_id: r for r in results}
        assert by_webhook[endpoint_a.id].success is True
        assert by_webhook[endpoint_a.id].response_code == 200
        assert by_webhook[endpoint_b.id].success is False
        assert by_webhook[endpoint_b.id].error == "Request timeout"

        [delivery_a] = await storage.list_deliveries(endpoint_a.id)
        [delivery_b] = await storage.list_deliveries(endpoint_b.id)
        assert delivery_a.status == "success"
        assert delivery_a.response_code == 200
        assert delivery_a.attempt_count == 1
        assert delivery_a.next_retry_at is None
        assert delivery_b.status == "retrying"
        assert delivery_b.attempt_count == 1
        assert delivery_b.next_retry_at == START + timedelta(minutes=1)
        assert delivery_b.error == "Request timeout"

    @pytest.mark.asyncio
    async def test_client_error_is_retried(self, storage, clock, make_webhook):
        webhook = await make_webhook()
        dispatcher = make_dispatcher(storage, clock, ok_handler(404, "no such hook"))

        [result] = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        [delivery] = await storage.list_deliveries(webhook.id)
        assert result.success is False
        assert result.response_code == 404
        assert delivery.status == "retrying"
        assert delivery.response_body == "no such hook"
        assert delivery.error.startswith("HTTP 404")

    @pytest.mark.asyncio
    async def test_connection_error_is_captured(self, storage, clock, make_webhook):
        webhook = await make_webhook()

        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = make_dispatcher(storage, clock, handler)

        [result] = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        [delivery] = await storage.list_deliveries(webhook.id)
        assert result.success is False
        assert result.error == "connection refused"
        assert delivery.status == "retrying"
        assert delivery.response_code is None

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_failed_attempt(self, storage, clock, make_webhook):
        healthy = await make_webhook("https://a.example.com/hook")
        broken = await make_webhook("https://b.example.com/hook")

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "b.example.com":
                raise RuntimeError("serializer exploded")
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        results = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        by_webhook = {r.webhook_id: r for r in results}
        assert by_webhook[healthy.id].success is True
        assert by_webhook[broken.id].success is False
        assert by_webhook[broken.id].error == "Unexpected error: serializer exploded"

        [delivery] = await storage.list_deliveries(broken.id)
        assert delivery.status == "retrying"
        assert delivery.attempt_count == 1
        assert delivery.error == "Unexpected error: serializer exploded"
        assert delivery.next_retry_at == clock() + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_sends_run_concurrently(self, storage, clock, make_webhook):
        for host in ("a", "b", "c"):
            await make_webhook(f"https://{host}.example.com/hook")
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        assert peak == 3

    @pytest.mark.asyncio
    async def test_max_concurrent_bounds_sends(self, storage, clock, make_webhook):
        for host in ("a", "b", "c"):
            await make_webhook(f"https://{host}.example.com/hook")
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler, max_concurrent=1)

        results = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        assert peak == 1
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_all_endpoints_share_one_payload(self, storage, clock, make_webhook):
        await make_webhook("https://a.example.com/hook")
        await make_webhook("https://b.example.com/hook")
        bodies: list[bytes] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.content)
            clock.advance(seconds=1)
            return httpx.Response(200)

        dispatcher = make_dispatcher(storage, clock, handler)

        await dispatcher.dispatch_event("biz_1", "appointment.booked", {"n": 1})

        assert len(bodies) == 2
        assert bodies[0] == bodies[1]

    @pytest.mark.asyncio
    async def test_without_client_opens_one_per_send(self, storage, clock, make_webhook):
        await make_webhook()
        dispatcher = WebhookDispatcher(storage, storage, clock=clock)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_response = MagicMock()
            mock_response.status_code = 200
            mock_response.text = "OK"
            mock_response.is_success = True

            client = AsyncMock()
            client.post = AsyncMock(return_value=mock_response)
            client.__aenter__ = AsyncMock(return_value=client)
            client.__aexit__ = AsyncMock(return_value=None)
            mock_client_class.return_value = client

            [result] = await dispatcher.dispatch_event("biz_1", "appointment.booked", {})

        assert result.success is True
        mock_client_class.assert_called_once_with(timeout=30.0)


class TestEventHelpers:
    """Tests for the typed event helpers."""

    @pytest.fixture
    def recorder(self):
        dispatcher = WebhookDispatcher(AsyncMock(), AsyncMock())
        dispatcher.dispatch_event = AsyncMock(return_value=[])
        return dispatcher

    @pytest.mark.asyncio
    async def test_call_started_drops_missing_fields(self, recorder):
        await recorder.dispatch_call_started(
            "biz_1", call_id="c1", started_at="2025-03-10T12:00:00Z"
        )

        recorder.dispatch_event.assert_awaited_once_with(
            "biz_1",
            "call.started",
            {"call_id": "c1", "started_at": "2025-03-10T12:00:00Z"},
        )

    @pytest.mark.asyncio
    async def test_call_ended(self, recorder):
        await recorder.dispatch_call_ended(
            "biz_1", call_id="c1", ended_at="t", duration_seconds=42, outcome="booked"
        )

        recorder.dispatch_event.assert_awaited_once_with(
            "biz_1",
            "call.ended",
            {"call_id": "c1", "ended_at": "t", "duration_seconds": 42, "outcome": "booked"},
        )

    @pytest.mark.asyncio
    async def test_appointment_helpers_use_their_event(self, recorder):
        await recorder.dispatch_appointment_booked("biz_1", appointment_id="a1")
        await recorder.dispatch_appointment_updated("biz_1", appointment_id="a1", changes=["time"])
        await recorder.dispatch_appointment_cancelled(
            "biz_1", appointment_id="a1", cancelled_at="2025-03-10"
        )

        events = [call.args[1] for call in recorder.dispatch_event.await_args_list]
        assert events == ["appointment.booked", "appointment.updated", "appointment.cancelled"]
        assert recorder.dispatch_event.await_args_list[1].args[2] == {
            "appointment_id": "a1",
            "changes": ["time"],
        }

    @pytest.mark.asyncio
    async def test_message_lead_and_payment(self, recorder):
        await recorder.dispatch_message_taken(
            "biz_1", caller_name="Jane", caller_phone="+1555", message="Call back"
        )
        await recorder.dispatch_lead_captured("biz_1", name="Jane", phone="+1555", source="call")
        await recorder.dispatch_payment_collected(
            "biz_1",
            amount=49.5,
            currency="usd",
            description="Deposit",
            customer_phone="+1555",
            status="paid",
        )

        calls = recorder.dispatch_event.await_args_list
        assert calls[0].args[1:] == (
            "message.taken",
            {
                "caller_name": "Jane",
                "caller_phone": "+1555",
                "message": "Call back",
                "urgency": "medium",
            },
        )
        assert calls[1].args[1] == "lead.captured"
        assert calls[2].args[2]["amount"] == 49.5
        assert "payment_link" not in calls[2].args[2]


class TestSendTestEvent:
    """Tests for WebhookDispatcher.send_test_event."""

    @pytest.mark.asyncio
    async def test_unknown_webhook_raises(self, storage, clock):
        dispatcher = make_dispatcher(storage, clock, ok_handler())

        with pytest.raises(NotFoundError):
            await dispatcher.send_test_event("whk_missing")

    @pytest.mark.asyncio
    async def test_sends_sample_without_record(self, storage, clock, make_webhook):
        webhook = await make_webhook()
        captured: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(500, text="down")

        dispatcher = make_dispatcher(storage, clock, handler)

        result = await dispatcher.send_test_event(webhook.id)

        assert result.success is False
        assert result.delivery_id is None
        assert result.response_code == 500
        assert await storage.list_deliveries(webhook.id) == []
        body = json.loads(captured[0].content)
        assert body["event"] == "call.completed"
        assert body["data"]["test"] is True
        assert captured[0].headers["x-koya-event"] == "call.completed"

    @pytest.mark.asyncio
    async def test_uses_direct_timeout(self, storage, clock, make_webhook):
        webhook = await make_webhook()
        dispatcher = WebhookDispatcher(storage, storage, clock=clock)

        with patch.object(dispatcher, "_post", new=AsyncMock()) as post:
            post.return_value = httpx.Response(200)
            await dispatcher.send_test_event(webhook.id)

        assert post.await_args.args[3] == 10.0


class TestDispatchWebhookEvent:
    """Tests for the module-level convenience function."""

    @pytest.mark.asyncio
    async def test_passes_keyword_data(self):
        storage = InMemoryWebhookStorage()

        with patch.object(WebhookDispatcher, "dispatch_event", new=AsyncMock(return_value=[])) as d:
            await dispatch_webhook_event(storage, storage, "biz_1", "lead.captured", name="Jane")

        d.assert_awaited_once_with("biz_1", "lead.captured", {"name": "Jane"})
