"""FastAPI router for the Koya webhook API."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from koya import __version__
from koya.logging import job_context
from koya.models import DeliveryStats, DispatchResult, FailedWebhookStats, RetryStats
from koya.service import WebhookService

from .auth import CronAuth
from .deps import current_service, get_service, set_service
from .schemas import (
    CleanupResponse,
    DeliveryHistoryResponse,
    DeliveryRecordResponse,
    FailedWebhookRetryResponse,
    HealthResponse,
)

router = APIRouter()

ServiceDep = Annotated[WebhookService, Depends(get_service)]

__all__ = ["router", "set_service"]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Report whether the service and its storage are ready."""
    service = current_service()
    if service is None:
        return HealthResponse(status="unhealthy", version=__version__)
    return HealthResponse(
        status="healthy",
        version=__version__,
        storage_backend=service.settings.storage_backend,
    )


# Periodic jobs


@router.post(
    "/jobs/webhook-retries",
    response_model=RetryStats,
    dependencies=[CronAuth],
    tags=["jobs"],
)
async def run_webhook_retries(service: ServiceDep) -> RetryStats:
    """Retry due outbound deliveries (intended to run every few minutes)."""
    with job_context("webhook_retries"):
        return await service.scheduler.process_retries()


@router.post(
    "/jobs/failed-webhook-retries",
    response_model=RetryStats,
    dependencies=[CronAuth],
    tags=["jobs"],
)
async def run_failed_webhook_retries(service: ServiceDep) -> RetryStats:
    """Reprocess due inbound failures."""
    with job_context("failed_webhook_retries"):
        return await service.processor.process_retries()


@router.post(
    "/jobs/failed-webhook-cleanup",
    response_model=CleanupResponse,
    dependencies=[CronAuth],
    tags=["jobs"],
)
async def run_failed_webhook_cleanup(
    service: ServiceDep,
    days_old: Annotated[int | None, Query(ge=1, le=365)] = None,
) -> CleanupResponse:
    """Delete reprocessed inbound webhooks past the retention window."""
    days = days_old or service.settings.failed_webhook_retention_days
    with job_context("failed_webhook_cleanup", days_old=days):
        deleted = await service.failures.cleanup_old_webhooks(days)
    return CleanupResponse(deleted=deleted, days_old=days)


# Inbound failures


@router.get(
    "/failed-webhooks/stats",
    response_model=FailedWebhookStats,
    tags=["failed-webhooks"],
)
async def get_failed_webhook_stats(service: ServiceDep) -> FailedWebhookStats:
    """Counts of stored inbound failures by status and by source."""
    return await service.failures.get_stats()


@router.post(
    "/failed-webhooks/{failed_webhook_id}/retry",
    response_model=FailedWebhookRetryResponse,
    dependencies=[CronAuth],
    tags=["failed-webhooks"],
)
async def retry_failed_webhook(
    failed_webhook_id: str,
    service: ServiceDep,
) -> FailedWebhookRetryResponse:
    """Reprocess one stored inbound webhook now."""
    success = await service.processor.retry_single(failed_webhook_id)
    return FailedWebhookRetryResponse(id=failed_webhook_id, success=success)


# Outbound endpoints


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=DeliveryHistoryResponse,
    dependencies=[CronAuth],
    tags=["webhooks"],
)
async def get_webhook_deliveries(
    webhook_id: str,
    service: ServiceDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> DeliveryHistoryResponse:
    """Recent deliveries for an endpoint, newest first."""
    deliveries = await service.get_delivery_history(webhook_id, limit)
    return DeliveryHistoryResponse(
        webhook_id=webhook_id,
        deliveries=[DeliveryRecordResponse.from_delivery(d) for d in deliveries],
        stats=DeliveryStats.from_deliveries(deliveries),
    )


@router.get(
    "/webhooks/{webhook_id}/stats",
    response_model=DeliveryStats,
    dependencies=[CronAuth],
    tags=["webhooks"],
)
async def get_webhook_stats(webhook_id: str, service: ServiceDep) -> DeliveryStats:
    return await service.get_delivery_stats(webhook_id)


@router.post(
    "/webhooks/{webhook_id}/test",
    response_model=DispatchResult,
    dependencies=[CronAuth],
    tags=["webhooks"],
)
async def send_webhook_test(webhook_id: str, service: ServiceDep) -> DispatchResult:
    """Send a sample event to an endpoint without recording a delivery."""
    return await service.dispatcher.send_test_event(webhook_id)
