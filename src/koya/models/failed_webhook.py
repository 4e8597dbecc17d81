"""Inbound failure records.

A FailedWebhook holds a provider-originated webhook (Stripe, Retell,
Twilio) whose internal processing raised, so it can be reprocessed with
capped exponential backoff. Records that exhaust their retries stay in
the ``failed`` state as a dead-letter queue for manual inspection.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from koya.exceptions import InvalidTransitionError

from .base import generate_id

# Providers that send webhooks into the platform
WebhookSource = Literal["stripe", "retell", "twilio"]

ALL_WEBHOOK_SOURCES: list[WebhookSource] = ["stripe", "retell", "twilio"]

FailedWebhookStatus = Literal["pending", "retrying", "success", "failed"]


class FailedWebhook(BaseModel):
    """An inbound webhook awaiting reprocessing.

    Attributes:
        id: Unique identifier for this record.
        source: Provider that sent the webhook.
        event_type: Provider event type (e.g. "invoice.payment_failed").
        payload: Original webhook payload, replayed on retry.
        error_message: Last processing error.
        retry_count: Retries performed so far.
        max_retries: Retries allowed before dead-lettering.
        status: Record status.
        next_retry_at: When the next retry is due.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("fwh"))
    source: WebhookSource = Field(description="Provider that sent the webhook")
    event_type: str = Field(min_length=1, description="Provider event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Original payload")
    error_message: str | None = Field(default=None, description="Last processing error")
    retry_count: int = Field(default=0, ge=0, description="Retries performed so far")
    max_retries: int = Field(default=5, ge=1, description="Retries allowed")
    status: FailedWebhookStatus = Field(default="pending", description="Record status")
    next_retry_at: datetime | None = Field(default=None, description="When next retry is due")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "failed")

    def _ensure_open(self, target: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(self.id, self.status, target)

    def mark_success(self, now: datetime) -> "FailedWebhook":
        """Processing succeeded; no more retries."""
        self._ensure_open("success")
        self.status = "success"
        self.next_retry_at = None
        self.updated_at = now
        return self

    def mark_retrying(
        self,
        now: datetime,
        retry_count: int,
        next_retry_at: datetime,
        error: str,
    ) -> "FailedWebhook":
        """Record another failed retry and schedule the next one."""
        self._ensure_open("retrying")
        self.status = "retrying"
        self.retry_count = max(self.retry_count, retry_count)
        self.next_retry_at = next_retry_at
        self.error_message = error
        self.updated_at = now
        return self

    def mark_failed(self, now: datetime, retry_count: int, error: str) -> "FailedWebhook":
        """Retries exhausted; the record is dead-lettered."""
        self._ensure_open("failed")
        self.status = "failed"
        self.retry_count = max(self.retry_count, retry_count)
        self.next_retry_at = None
        self.error_message = error
        self.updated_at = now
        return self


class FailedWebhookStats(BaseModel):
    """Counts of inbound failure records by status and by source."""

    model_config = ConfigDict(extra="forbid")

    pending: int = Field(default=0, ge=0)
    retrying: int = Field(default=0, ge=0)
    success: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    by_source: dict[str, int] = Field(
        default_factory=lambda: {source: 0 for source in ALL_WEBHOOK_SOURCES}
    )


__all__ = [
    "ALL_WEBHOOK_SOURCES",
    "FailedWebhook",
    "FailedWebhookStats",
    "FailedWebhookStatus",
    "WebhookSource",
]
