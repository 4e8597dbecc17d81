"""Outbound webhook dispatch.

Fans one business event out to every active endpoint a tenant has
subscribed to it. Each endpoint gets its own delivery record, signed
request and result; a slow or failing endpoint never affects the others.
Failed attempts are scheduled on the shared backoff table and picked up
later by :class:`koya.webhooks.retry.RetryScheduler`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import httpx

from koya.exceptions import NotFoundError, ValidationError
from koya.logging import get_logger
from koya.models import (
    DispatchResult,
    EventType,
    WebhookDelivery,
    WebhookPayload,
    is_event_type,
)
from koya.models.base import Clock, isoformat_utc, utc_now

from .backoff import DEFAULT_RETRY_POLICY, RetryPolicy
from .signing import sign

if TYPE_CHECKING:
    from koya.models import Webhook
    from koya.storage import DeliveryStore, WebhookRegistry

logger = get_logger(__name__)

USER_AGENT = "Koya-Webhooks/1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
DIRECT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONCURRENT = 10


@dataclass(frozen=True)
class SendOutcome:
    """What happened to a single POST."""

    success: bool
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None


def build_headers(payload: str, secret: str, event_type: str, timestamp: str) -> dict[str, str]:
    """Headers for one attempt; the delivery id is fresh every call."""
    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Koya-Event": event_type,
        "X-Koya-Signature": sign(payload, secret, timestamp),
        "X-Koya-Timestamp": timestamp,
        "X-Koya-Delivery-Id": str(uuid4()),
    }


def _compact(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class WebhookDispatcher:
    """Dispatches business events to tenant webhook endpoints.

    Example:
        ```python
        dispatcher = WebhookDispatcher(storage, storage)

        results = await dispatcher.dispatch_event(
            "biz_123",
            "appointment.booked",
            {"appointment_id": "a1", "customer_name": "Jane"},
        )
        ```
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        deliveries: DeliveryStore,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        direct_timeout_seconds: float = DIRECT_TIMEOUT_SECONDS,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_attempts: int | None = None,
    ) -> None:
        """Initialize the webhook dispatcher.

        Args:
            registry: Source of endpoint subscriptions.
            deliveries: Store for delivery records.
            client: Shared HTTP client. When omitted a client is opened per send.
            clock: Time source used for timestamps and backoff.
            policy: Backoff table and attempt cap.
            timeout_seconds: Timeout for event deliveries.
            direct_timeout_seconds: Timeout for test sends.
            max_concurrent: Maximum concurrent sends.
            max_attempts: Attempt cap for new records. Defaults to the policy's.
        """
        self._registry = registry
        self._deliveries = deliveries
        self._client = client
        self._clock = clock
        self._policy = policy
        self._timeout = timeout_seconds
        self._direct_timeout = direct_timeout_seconds
        self._max_attempts = max_attempts or policy.max_attempts
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def dispatch_event(
        self,
        tenant_id: str,
        event_type: str,
        data: dict[str, Any],
    ) -> list[DispatchResult]:
        """Deliver an event to every active endpoint subscribed to it.

        Args:
            tenant_id: Business the event belongs to.
            event_type: One of the supported event types.
            data: Event-specific data, sent as-is.

        Returns:
            One result per matching endpoint, in registry order. Empty when
            nothing is subscribed.

        Raises:
            ValidationError: If event_type is not a supported event.
        """
        if not is_event_type(event_type):
            raise ValidationError("event_type", f"Unsupported event type: {event_type}")

        webhooks = await self._registry.list_active_endpoints_for_event(tenant_id, event_type)
        if not webhooks:
            logger.debug(
                "webhook_dispatch_no_endpoints", tenant_id=tenant_id, event_type=event_type
            )
            return []

        payload = WebhookPayload.build(event_type, data, self._clock()).serialize()

        outcomes = await asyncio.gather(
            *(self._deliver_to_webhook(webhook, event_type, payload) for webhook in webhooks),
            return_exceptions=True,
        )

        results: list[DispatchResult] = []
        for webhook, outcome in zip(webhooks, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "webhook_delivery_error",
                    webhook_id=webhook.id,
                    tenant_id=tenant_id,
                    event_type=event_type,
                    error=str(outcome),
                    exc_info=outcome,
                )
                results.append(
                    DispatchResult(webhook_id=webhook.id, success=False, error=str(outcome))
                )
            else:
                results.append(outcome)

        logger.info(
            "webhook_dispatched",
            tenant_id=tenant_id,
            event_type=event_type,
            endpoints=len(results),
            succeeded=sum(1 for r in results if r.success),
        )
        return results

    async def _deliver_to_webhook(
        self,
        webhook: Webhook,
        event_type: EventType,
        payload: str,
    ) -> DispatchResult:
        now = self._clock()
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            tenant_id=webhook.tenant_id,
            event_type=event_type,
            payload=payload,
            max_attempts=self._max_attempts,
            next_retry_at=now,
            created_at=now,
        )
        await self._deliveries.create_delivery(delivery)
        return await self.attempt_delivery(webhook, delivery)

    async def attempt_delivery(self, webhook: Webhook, delivery: WebhookDelivery) -> DispatchResult:
        """Send the stored payload once and persist the outcome.

        Used for first attempts and by the retry scheduler. Every attempt is
        persisted, including ones that end in an unexpected error.
        """
        async with self._semaphore:
            delivery.start_attempt(self._clock())
            outcome = await self._send(
                str(webhook.url),
                delivery.payload,
                webhook.secret,
                delivery.event_type,
                self._timeout,
            )

        now = self._clock()
        if outcome.success:
            delivery.mark_success(now, outcome.response_code or 200, outcome.response_body)
            logger.info(
                "webhook_delivered",
                webhook_id=webhook.id,
                delivery_id=delivery.id,
                event_type=delivery.event_type,
                attempt=delivery.attempt_count,
                response_code=outcome.response_code,
            )
        else:
            self._policy.apply_delivery_failure(
                delivery,
                now,
                error=outcome.error or "Unknown error",
                response_code=outcome.response_code,
                response_body=outcome.response_body,
            )
            self._log_failure(webhook, delivery)

        await self._deliveries.update_delivery(delivery)
        return DispatchResult(
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            success=outcome.success,
            response_code=outcome.response_code,
            error=outcome.error,
        )

    def _log_failure(self, webhook: Webhook, delivery: WebhookDelivery) -> None:
        context = {
            "webhook_id": webhook.id,
            "delivery_id": delivery.id,
            "tenant_id": delivery.tenant_id,
            "event_type": delivery.event_type,
            "attempt": delivery.attempt_count,
            "response_code": delivery.response_code,
            "error": delivery.error,
        }
        if delivery.status == "failed":
            logger.error("webhook_delivery_exhausted", **context)
        elif delivery.next_retry_at is not None:
            logger.warning(
                "webhook_delivery_retry_scheduled",
                next_retry_at=isoformat_utc(delivery.next_retry_at),
                **context,
            )

    async def _send(
        self,
        url: str,
        payload: str,
        secret: str,
        event_type: str,
        timeout: float,
    ) -> SendOutcome:
        """POST a signed payload. Errors while sending become failed outcomes."""
        headers = build_headers(payload, secret, event_type, isoformat_utc(self._clock()))

        try:
            response = await self._post(url, payload, headers, timeout)
        except httpx.TimeoutException:
            return SendOutcome(success=False, error="Request timeout")
        except httpx.HTTPError as e:
            return SendOutcome(success=False, error=str(e) or type(e).__name__)
        except Exception as e:
            logger.exception("webhook_send_error", url=url, event_type=event_type, error=str(e))
            return SendOutcome(success=False, error=f"Unexpected error: {e}")

        body = response.text or None
        if response.is_success:
            return SendOutcome(success=True, response_code=response.status_code, response_body=body)
        return SendOutcome(
            success=False,
            response_code=response.status_code,
            response_body=body,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
        )

    async def _post(
        self,
        url: str,
        payload: str,
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, content=payload, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, content=payload, headers=headers)

    async def send_test_event(self, webhook_id: str) -> DispatchResult:
        """Send a sample call.completed event to one endpoint.

        Uses the shorter direct timeout and creates no delivery record, so
        a failing test is never retried.

        Raises:
            NotFoundError: If the webhook does not exist.
        """
        webhook = await self._registry.get_webhook(webhook_id)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)

        payload = WebhookPayload.build(
            "call.completed",
            {
                "test": True,
                "message": "This is a test webhook from Koya",
                "call_id": f"test-{uuid4().hex[:8]}",
                "caller_number": "+15555555555",
                "duration_seconds": 120,
                "outcome": "test",
            },
            self._clock(),
        ).serialize()

        outcome = await self._send(
            str(webhook.url),
            payload,
            webhook.secret,
            "call.completed",
            self._direct_timeout,
        )
        logger.info(
            "webhook_test_sent",
            webhook_id=webhook.id,
            success=outcome.success,
            response_code=outcome.response_code,
        )
        return DispatchResult(
            webhook_id=webhook.id,
            success=outcome.success,
            response_code=outcome.response_code,
            error=outcome.error,
        )

    # Event helpers

    async def dispatch_call_started(
        self,
        tenant_id: str,
        *,
        call_id: str,
        started_at: str,
        from_number: str | None = None,
        to_number: str | None = None,
        caller_number: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "call.started",
            _compact(
                call_id=call_id,
                from_number=from_number,
                to_number=to_number,
                caller_number=caller_number,
                started_at=started_at,
            ),
        )

    async def dispatch_call_ended(
        self,
        tenant_id: str,
        *,
        call_id: str,
        ended_at: str,
        from_number: str | None = None,
        to_number: str | None = None,
        started_at: str | None = None,
        duration_seconds: int | None = None,
        outcome: str | None = None,
        summary: str | None = None,
        recording_url: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "call.ended",
            _compact(
                call_id=call_id,
                from_number=from_number,
                to_number=to_number,
                started_at=started_at,
                ended_at=ended_at,
                duration_seconds=duration_seconds,
                outcome=outcome,
                summary=summary,
                recording_url=recording_url,
            ),
        )

    async def dispatch_appointment_booked(
        self,
        tenant_id: str,
        *,
        appointment_id: str,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        customer_email: str | None = None,
        service_name: str | None = None,
        scheduled_at: str | None = None,
        duration_minutes: int | None = None,
        notes: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "appointment.booked",
            _compact(
                appointment_id=appointment_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                customer_email=customer_email,
                service_name=service_name,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                notes=notes,
            ),
        )

    async def dispatch_appointment_updated(
        self,
        tenant_id: str,
        *,
        appointment_id: str,
        changes: list[str],
        customer_name: str | None = None,
        customer_phone: str | None = None,
        customer_email: str | None = None,
        service_name: str | None = None,
        scheduled_at: str | None = None,
        duration_minutes: int | None = None,
        status: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "appointment.updated",
            _compact(
                appointment_id=appointment_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                customer_email=customer_email,
                service_name=service_name,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                status=status,
                changes=list(changes),
            ),
        )

    async def dispatch_appointment_cancelled(
        self,
        tenant_id: str,
        *,
        appointment_id: str,
        cancelled_at: str,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        reason: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "appointment.cancelled",
            _compact(
                appointment_id=appointment_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                cancelled_at=cancelled_at,
                reason=reason,
            ),
        )

    async def dispatch_message_taken(
        self,
        tenant_id: str,
        *,
        caller_name: str,
        caller_phone: str,
        message: str,
        urgency: str = "medium",
        call_id: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "message.taken",
            _compact(
                caller_name=caller_name,
                caller_phone=caller_phone,
                message=message,
                urgency=urgency,
                call_id=call_id,
            ),
        )

    async def dispatch_lead_captured(
        self,
        tenant_id: str,
        *,
        name: str,
        phone: str,
        source: str,
        email: str | None = None,
        interest: str | None = None,
        notes: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "lead.captured",
            _compact(
                name=name,
                email=email,
                phone=phone,
                interest=interest,
                notes=notes,
                source=source,
            ),
        )

    async def dispatch_payment_collected(
        self,
        tenant_id: str,
        *,
        amount: float,
        currency: str,
        description: str,
        customer_phone: str,
        status: str,
        payment_link: str | None = None,
    ) -> list[DispatchResult]:
        return await self.dispatch_event(
            tenant_id,
            "payment.collected",
            _compact(
                amount=amount,
                currency=currency,
                description=description,
                customer_phone=customer_phone,
                payment_link=payment_link,
                status=status,
            ),
        )


async def dispatch_webhook_event(
    registry: WebhookRegistry,
    deliveries: DeliveryStore,
    tenant_id: str,
    event_type: str,
    **data: object,
) -> list[DispatchResult]:
    """Convenience function to dispatch one event with a default dispatcher.

    Args:
        registry: Source of endpoint subscriptions.
        deliveries: Store for delivery records.
        tenant_id: Business the event belongs to.
        event_type: Type of event.
        **data: Event-specific payload data.

    Returns:
        One result per matching endpoint.
    """
    dispatcher = WebhookDispatcher(registry, deliveries)
    return await dispatcher.dispatch_event(tenant_id, event_type, dict(data))
