"""Outbound webhook models.

Provides endpoint subscriptions, the signed event payload, and the
delivery record that tracks one (endpoint, event) dispatch lifecycle.
"""

import secrets
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from koya.exceptions import InvalidTransitionError

from .base import generate_id, isoformat_utc

# Closed set of events a tenant endpoint can subscribe to
EventType = Literal[
    "call.started",
    "call.completed",
    "call.ended",
    "appointment.booked",
    "appointment.created",
    "appointment.updated",
    "appointment.cancelled",
    "message.taken",
    "lead.captured",
    "payment.collected",
]

ALL_EVENT_TYPES: list[EventType] = [
    "call.started",
    "call.completed",
    "call.ended",
    "appointment.booked",
    "appointment.created",
    "appointment.updated",
    "appointment.cancelled",
    "message.taken",
    "lead.captured",
    "payment.collected",
]

DeliveryStatus = Literal["pending", "success", "failed", "retrying"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "failed"})

# Longest response body kept on a delivery record
RESPONSE_BODY_LIMIT = 1000


def generate_webhook_secret() -> str:
    """Generate a signing secret for a new endpoint ("whsec_" + 64 hex chars)."""
    return f"whsec_{secrets.token_hex(32)}"


def is_event_type(value: str) -> bool:
    """Check whether a string is one of the supported event types."""
    return value in ALL_EVENT_TYPES


class Webhook(BaseModel):
    """A tenant-owned endpoint subscription.

    Endpoints are deactivated rather than deleted so delivery history
    keeps pointing at a real configuration.

    Attributes:
        id: Unique identifier for this endpoint.
        tenant_id: Business that owns the endpoint.
        url: HTTP(S) endpoint receiving event notifications.
        secret: Shared secret for HMAC-SHA256 signatures.
        events: Event types this endpoint subscribes to.
        active: Whether deliveries are sent to this endpoint.
        description: Optional human-readable label.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    tenant_id: str = Field(description="Business that owns this endpoint")
    url: HttpUrl = Field(description="Endpoint receiving event notifications")
    secret: str = Field(
        default_factory=generate_webhook_secret,
        min_length=1,
        description="Shared secret for HMAC-SHA256 signatures",
    )
    events: list[EventType] = Field(
        min_length=1,
        description="Event types to subscribe to",
    )
    active: bool = Field(default=True, description="Whether endpoint is active")
    description: str | None = Field(default=None, description="Human-readable description")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the endpoint was registered",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the endpoint was last modified",
    )

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint is active and subscribed to the event type."""
        return self.active and event_type in self.events


class WebhookPayload(BaseModel):
    """Body sent to every endpoint for one event.

    Built once per dispatch and shared by all endpoints; frozen so no
    endpoint-specific state can leak into it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event: EventType = Field(description="Event type")
    timestamp: str = Field(description="ISO-8601 time the event was dispatched")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")

    @classmethod
    def build(
        cls,
        event: EventType,
        data: dict[str, Any],
        now: datetime,
    ) -> "WebhookPayload":
        """Create a payload stamped with the given time."""
        return cls(event=event, timestamp=isoformat_utc(now), data=dict(data))

    def serialize(self) -> str:
        """Serialize to the compact JSON body that gets signed and sent."""
        return self.model_dump_json()


class WebhookDelivery(BaseModel):
    """Record of one event's delivery lifecycle to one endpoint.

    Status moves pending -> (retrying ->)* success | failed and never
    leaves a terminal state. ``next_retry_at`` is set only while the
    record is waiting for an attempt.

    Attributes:
        id: Unique identifier for this delivery.
        webhook_id: Endpoint the event is delivered to.
        tenant_id: Business that owns the endpoint.
        event_type: Event being delivered.
        payload: Serialized payload snapshot, resent verbatim on retry.
        status: Delivery status.
        attempt_count: Attempts made so far.
        max_attempts: Attempts allowed before the record fails.
        error: Last error message.
        response_code: Last HTTP status code, if a response arrived.
        response_body: Last response body (truncated).
        next_retry_at: When the next attempt is due.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str = Field(description="Endpoint the event is delivered to")
    tenant_id: str = Field(description="Business that owns the endpoint")
    event_type: EventType = Field(description="Event being delivered")
    payload: str = Field(description="Serialized payload snapshot")
    status: DeliveryStatus = Field(default="pending", description="Delivery status")
    attempt_count: int = Field(default=0, ge=0, description="Attempts made so far")
    max_attempts: int = Field(default=5, ge=1, description="Attempts allowed")
    error: str | None = Field(default=None, description="Last error message")
    response_code: int | None = Field(default=None, description="Last HTTP status code")
    response_body: str | None = Field(
        default=None,
        description="Last HTTP response body (truncated to 1000 chars)",
    )
    next_retry_at: datetime | None = Field(default=None, description="When next attempt is due")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the delivery was created",
    )
    last_attempt_at: datetime | None = Field(default=None, description="Last attempt time")
    completed_at: datetime | None = Field(
        default=None,
        description="When a terminal state was reached",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def _ensure_open(self, target: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(self.id, self.status, target)

    def start_attempt(self, now: datetime) -> "WebhookDelivery":
        """Count a new attempt."""
        self._ensure_open("attempt")
        self.attempt_count += 1
        self.last_attempt_at = now
        return self

    def mark_success(
        self,
        now: datetime,
        response_code: int,
        response_body: str | None = None,
    ) -> "WebhookDelivery":
        """Mark delivery as successful."""
        self._ensure_open("success")
        self.status = "success"
        self.completed_at = now
        self.next_retry_at = None
        self.error = None
        self.response_code = response_code
        self.response_body = response_body[:RESPONSE_BODY_LIMIT] if response_body else None
        return self

    def mark_failed(
        self,
        now: datetime,
        error: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> "WebhookDelivery":
        """Mark delivery as permanently failed (no more retries)."""
        self._ensure_open("failed")
        self.status = "failed"
        self.completed_at = now
        self.next_retry_at = None
        self.error = error
        self.response_code = response_code
        self.response_body = response_body[:RESPONSE_BODY_LIMIT] if response_body else None
        return self

    def mark_retrying(
        self,
        next_retry_at: datetime,
        error: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> "WebhookDelivery":
        """Schedule another attempt."""
        self._ensure_open("retrying")
        self.status = "retrying"
        self.next_retry_at = next_retry_at
        self.error = error
        self.response_code = response_code
        self.response_body = response_body[:RESPONSE_BODY_LIMIT] if response_body else None
        return self


class DispatchResult(BaseModel):
    """Outcome of delivering one event to one endpoint."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    delivery_id: str | None = None
    success: bool
    response_code: int | None = None
    error: str | None = None


class RetryStats(BaseModel):
    """Summary of one retry pass."""

    model_config = ConfigDict(extra="forbid")

    processed: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)


class DeliveryStats(BaseModel):
    """Delivery counts for one endpoint, as shown in delivery history."""

    model_config = ConfigDict(extra="forbid")

    total: int = Field(default=0, ge=0)
    success: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    retrying: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)

    @classmethod
    def from_deliveries(cls, deliveries: list[WebhookDelivery]) -> "DeliveryStats":
        counts = {"success": 0, "failed": 0, "pending": 0, "retrying": 0}
        for delivery in deliveries:
            counts[delivery.status] += 1
        total = len(deliveries)
        rate = round(counts["success"] / total * 100, 2) if total else 0.0
        return cls(total=total, success_rate=rate, **counts)


__all__ = [
    "ALL_EVENT_TYPES",
    "DeliveryStats",
    "DeliveryStatus",
    "DispatchResult",
    "EventType",
    "RESPONSE_BODY_LIMIT",
    "RetryStats",
    "TERMINAL_STATUSES",
    "Webhook",
    "WebhookDelivery",
    "WebhookPayload",
    "generate_webhook_secret",
    "is_event_type",
]
