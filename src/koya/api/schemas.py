"""Response schemas for the Koya webhook API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from koya.models import DeliveryStats, WebhookDelivery


class HealthResponse(BaseModel):
    """Service health status."""

    status: str = Field(description="healthy or unhealthy")
    version: str
    storage_backend: str | None = None


class DeliveryRecordResponse(BaseModel):
    """One delivery as shown in endpoint history.

    Omits the payload snapshot; it may carry customer data.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    webhook_id: str
    event_type: str
    status: str
    attempt_count: int
    max_attempts: int
    response_code: int | None = None
    error: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> DeliveryRecordResponse:
        return cls(
            id=delivery.id,
            webhook_id=delivery.webhook_id,
            event_type=delivery.event_type,
            status=delivery.status,
            attempt_count=delivery.attempt_count,
            max_attempts=delivery.max_attempts,
            response_code=delivery.response_code,
            error=delivery.error,
            next_retry_at=delivery.next_retry_at,
            created_at=delivery.created_at,
            last_attempt_at=delivery.last_attempt_at,
            completed_at=delivery.completed_at,
        )


class DeliveryHistoryResponse(BaseModel):
    """Recent deliveries for one endpoint."""

    webhook_id: str
    deliveries: list[DeliveryRecordResponse]
    stats: DeliveryStats


class CleanupResponse(BaseModel):
    deleted: int = Field(ge=0)
    days_old: int = Field(ge=1)


class FailedWebhookRetryResponse(BaseModel):
    id: str
    success: bool
