"""Repository interfaces consumed by the webhook components.

The dispatcher, retry scheduler and inbound failure store only ever talk
to these protocols. Every write is a single-record update keyed by id;
``claim_*`` is the one conditional write, used to keep overlapping retry
passes from attempting the same record twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from koya.models import EventType, FailedWebhook, Webhook, WebhookDelivery

# Statuses that are still waiting for an attempt
OPEN_STATUSES: tuple[str, ...] = ("pending", "retrying")


@runtime_checkable
class WebhookRegistry(Protocol):
    """Tenant endpoint subscriptions."""

    async def store_webhook(self, webhook: Webhook) -> str: ...

    async def get_webhook(self, webhook_id: str) -> Webhook | None: ...

    async def list_active_endpoints_for_event(
        self,
        tenant_id: str,
        event_type: EventType,
    ) -> list[Webhook]: ...


@runtime_checkable
class DeliveryStore(Protocol):
    """Outbound delivery records."""

    async def create_delivery(self, delivery: WebhookDelivery) -> str: ...

    async def update_delivery(self, delivery: WebhookDelivery) -> str: ...

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None: ...

    async def get_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """Open deliveries with next_retry_at <= now, earliest first."""
        ...

    async def claim_delivery(
        self,
        delivery_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Push next_retry_at to lease_until if the delivery is still due.

        Returns True if this caller won the claim.
        """
        ...

    async def list_deliveries(self, webhook_id: str, limit: int = 100) -> list[WebhookDelivery]:
        """Delivery history for an endpoint, newest first."""
        ...


@runtime_checkable
class FailedWebhookStore(Protocol):
    """Inbound failure records."""

    async def insert_failed_webhook(self, record: FailedWebhook) -> str: ...

    async def get_failed_webhook(self, record_id: str) -> FailedWebhook | None: ...

    async def update_failed_webhook(self, record: FailedWebhook) -> str: ...

    async def get_due_failed_webhooks(self, now: datetime, limit: int) -> list[FailedWebhook]:
        """Open records with next_retry_at <= now, earliest first."""
        ...

    async def claim_failed_webhook(
        self,
        record_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool: ...

    async def list_failed_webhooks(self) -> list[FailedWebhook]: ...

    async def delete_succeeded_before(self, cutoff: datetime) -> int:
        """Delete success records last updated before cutoff; return the count."""
        ...


def is_due(status: str, next_retry_at: datetime | None, now: datetime) -> bool:
    """Whether a record should be picked up by a retry pass."""
    return status in OPEN_STATUSES and next_retry_at is not None and next_retry_at <= now
