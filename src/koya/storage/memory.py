"""In-process storage backend.

Implements all three repository protocols with dictionaries. Records are
copied on the way in and out so callers never share state with the store,
matching the behavior of a real database. The claim methods contain no
awaits between the check and the write, which makes them atomic under
asyncio.

Suitable for tests and single-process deployments; state is lost on
restart.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from koya.exceptions import NotFoundError

from .base import is_due

if TYPE_CHECKING:
    from koya.models import EventType, FailedWebhook, Webhook, WebhookDelivery

logger = logging.getLogger(__name__)


class InMemoryWebhookStorage:
    """Dictionary-backed WebhookRegistry, DeliveryStore and FailedWebhookStore."""

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._failed: dict[str, FailedWebhook] = {}

    # Webhook registry

    async def store_webhook(self, webhook: Webhook) -> str:
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)
        return webhook.id

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def list_active_endpoints_for_event(
        self,
        tenant_id: str,
        event_type: EventType,
    ) -> list[Webhook]:
        return [
            webhook.model_copy(deep=True)
            for webhook in self._webhooks.values()
            if webhook.tenant_id == tenant_id and webhook.subscribes_to(event_type)
        ]

    # Delivery store

    async def create_delivery(self, delivery: WebhookDelivery) -> str:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery.id

    async def update_delivery(self, delivery: WebhookDelivery) -> str:
        if delivery.id not in self._deliveries:
            raise NotFoundError("delivery", delivery.id)
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery.id

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def get_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        due = [d for d in self._deliveries.values() if is_due(d.status, d.next_retry_at, now)]
        due.sort(key=lambda d: d.next_retry_at or now)
        return [d.model_copy(deep=True) for d in due[:limit]]

    async def claim_delivery(
        self,
        delivery_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None or not is_due(delivery.status, delivery.next_retry_at, now):
            return False
        delivery.next_retry_at = lease_until
        return True

    async def list_deliveries(self, webhook_id: str, limit: int = 100) -> list[WebhookDelivery]:
        deliveries = [d for d in self._deliveries.values() if d.webhook_id == webhook_id]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in deliveries[:limit]]

    # Failed webhook store

    async def insert_failed_webhook(self, record: FailedWebhook) -> str:
        self._failed[record.id] = record.model_copy(deep=True)
        return record.id

    async def get_failed_webhook(self, record_id: str) -> FailedWebhook | None:
        record = self._failed.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def update_failed_webhook(self, record: FailedWebhook) -> str:
        if record.id not in self._failed:
            raise NotFoundError("failed_webhook", record.id)
        self._failed[record.id] = record.model_copy(deep=True)
        return record.id

    async def get_due_failed_webhooks(self, now: datetime, limit: int) -> list[FailedWebhook]:
        due = [r for r in self._failed.values() if is_due(r.status, r.next_retry_at, now)]
        due.sort(key=lambda r: r.next_retry_at or now)
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def claim_failed_webhook(
        self,
        record_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        record = self._failed.get(record_id)
        if record is None or not is_due(record.status, record.next_retry_at, now):
            return False
        record.next_retry_at = lease_until
        return True

    async def list_failed_webhooks(self) -> list[FailedWebhook]:
        return [r.model_copy(deep=True) for r in self._failed.values()]

    async def delete_succeeded_before(self, cutoff: datetime) -> int:
        expired = [
            record_id
            for record_id, record in self._failed.items()
            if record.status == "success" and record.updated_at < cutoff
        ]
        for record_id in expired:
            del self._failed[record_id]
        if expired:
            logger.debug("Deleted %d succeeded failed-webhook records", len(expired))
        return len(expired)
