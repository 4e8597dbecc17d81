"""Wiring for the webhook subsystem.

WebhookService builds the storage backend, the outbound dispatcher and
retry scheduler, and the inbound failure store and processor from one
Settings object, and exposes the read-side queries the API needs.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx

from koya.config import Settings
from koya.exceptions import NotFoundError
from koya.logging import get_logger
from koya.models import DeliveryStats, WebhookDelivery, WebhookSource
from koya.models.base import Clock, utc_now
from koya.storage import InMemoryWebhookStorage, QdrantWebhookStorage, create_storage
from koya.webhooks import (
    InboundFailureStore,
    InboundHandler,
    InboundRetryProcessor,
    RetryScheduler,
    WebhookDispatcher,
)
from koya.webhooks.backoff import RETRY_DELAYS, RetryPolicy
from koya.webhooks.signing import verify_signature, verify_stripe_signature

logger = get_logger(__name__)

# Most recent deliveries considered by per-endpoint stats
STATS_WINDOW = 1000


class WebhookService:
    """Facade over the outbound and inbound webhook components.

    Example:
        ```python
        async with WebhookService.create() as service:
            await service.dispatcher.dispatch_event("biz_123", "call.started", data)
            await service.scheduler.process_retries()
        ```
    """

    def __init__(
        self,
        storage: InMemoryWebhookStorage | QdrantWebhookStorage,
        dispatcher: WebhookDispatcher,
        scheduler: RetryScheduler,
        failures: InboundFailureStore,
        processor: InboundRetryProcessor,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self.storage = storage
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.failures = failures
        self.processor = processor
        self.settings = settings
        self.clock = clock

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        storage: InMemoryWebhookStorage | QdrantWebhookStorage | None = None,
        client: httpx.AsyncClient | None = None,
        handlers: dict[WebhookSource, InboundHandler] | None = None,
        clock: Clock = utc_now,
    ) -> WebhookService:
        """Create a WebhookService from settings.

        Args:
            settings: Optional settings. Uses environment if None.
            storage: Backend to use instead of the configured one.
            client: Shared HTTP client for outbound sends.
            handlers: Inbound handlers by source, used by the inbound retry job.
            clock: Time source for every component.
        """
        if settings is None:
            settings = Settings()
        if storage is None:
            storage = create_storage(settings)

        policy = RetryPolicy(delays=RETRY_DELAYS, max_attempts=settings.webhook_max_attempts)
        lease = timedelta(seconds=settings.retry_claim_lease_seconds)

        dispatcher = WebhookDispatcher(
            storage,
            storage,
            client=client,
            clock=clock,
            policy=policy,
            timeout_seconds=settings.webhook_timeout_seconds,
            direct_timeout_seconds=settings.direct_webhook_timeout_seconds,
            max_concurrent=settings.webhook_max_concurrent,
        )
        scheduler = RetryScheduler(
            storage,
            storage,
            dispatcher,
            clock=clock,
            batch_size=settings.retry_batch_size,
            claim_lease=lease,
        )
        failures = InboundFailureStore(
            storage,
            clock=clock,
            policy=policy,
            max_retries=settings.inbound_max_retries,
        )
        processor = InboundRetryProcessor(
            failures,
            handlers,
            batch_size=settings.inbound_retry_batch_size,
            claim_lease=lease,
        )
        return cls(storage, dispatcher, scheduler, failures, processor, settings, clock)

    async def initialize(self) -> None:
        if isinstance(self.storage, QdrantWebhookStorage):
            await self.storage.initialize()
        logger.info("webhook_service_initialized", backend=self.settings.storage_backend)

    async def close(self) -> None:
        if isinstance(self.storage, QdrantWebhookStorage):
            await self.storage.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def get_delivery_history(self, webhook_id: str, limit: int = 50) -> list[WebhookDelivery]:
        """Newest deliveries for an endpoint.

        Raises:
            NotFoundError: If the webhook does not exist.
        """
        if await self.storage.get_webhook(webhook_id) is None:
            raise NotFoundError("webhook", webhook_id)
        return await self.storage.list_deliveries(webhook_id, limit)

    async def get_delivery_stats(self, webhook_id: str) -> DeliveryStats:
        """Status counts over an endpoint's most recent deliveries."""
        deliveries = await self.get_delivery_history(webhook_id, STATS_WINDOW)
        return DeliveryStats.from_deliveries(deliveries)

    def verify_signature(
        self,
        payload: str | bytes,
        signature: str | None,
        secret: str,
        timestamp: str | None,
    ) -> bool:
        """Check an X-Koya-Signature using the configured replay window."""
        return verify_signature(
            payload,
            signature,
            secret,
            timestamp,
            now=self.clock(),
            tolerance_seconds=self.settings.signature_tolerance_seconds,
        )

    def verify_stripe_signature(
        self,
        payload: str | bytes,
        signature_header: str | None,
        secret: str,
    ) -> bool:
        """Check a Stripe-Signature header using the configured replay window."""
        return verify_stripe_signature(
            payload,
            signature_header,
            secret,
            now=self.clock(),
            tolerance_seconds=self.settings.signature_tolerance_seconds,
        )
