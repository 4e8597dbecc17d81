"""Retry pass for outbound deliveries.

Run periodically (see the ``/jobs/webhook-retries`` endpoint). Each pass
takes the due deliveries, earliest first, and retries them one at a time.
Before a delivery is attempted it is claimed through the store, which
moves its ``next_retry_at`` past a lease; a pass that loses the claim to
an overlapping pass skips the record.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from koya.exceptions import InvalidTransitionError, NotFoundError
from koya.logging import get_logger
from koya.models import DispatchResult, RetryStats, WebhookDelivery
from koya.models.base import Clock, utc_now

if TYPE_CHECKING:
    from koya.storage import DeliveryStore, WebhookRegistry

    from .dispatcher import WebhookDispatcher

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_CLAIM_LEASE = timedelta(minutes=5)


class RetryScheduler:
    """Retries failed outbound deliveries on the backoff schedule.

    Example:
        ```python
        scheduler = RetryScheduler(storage, storage, dispatcher)
        stats = await scheduler.process_retries()
        ```
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        deliveries: DeliveryStore,
        dispatcher: WebhookDispatcher,
        *,
        clock: Clock = utc_now,
        batch_size: int = DEFAULT_BATCH_SIZE,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self._registry = registry
        self._deliveries = deliveries
        self._dispatcher = dispatcher
        self._clock = clock
        self._batch_size = batch_size
        self._claim_lease = claim_lease

    async def process_retries(self) -> RetryStats:
        """Retry every due delivery in one batch.

        Records are processed sequentially. A record that raises is logged
        and counted as failed; the pass carries on with the next one.

        Returns:
            Counts of attempted, succeeded and failed deliveries. Records
            lost to another pass are not counted.
        """
        due = await self._deliveries.get_due_deliveries(self._clock(), self._batch_size)

        processed = succeeded = failed = 0
        for delivery in due:
            now = self._clock()
            if not await self._deliveries.claim_delivery(
                delivery.id, now, now + self._claim_lease
            ):
                logger.debug("webhook_retry_claim_lost", delivery_id=delivery.id)
                continue

            processed += 1
            try:
                result = await self._retry(delivery)
            except Exception as e:
                failed += 1
                logger.exception(
                    "webhook_retry_error",
                    delivery_id=delivery.id,
                    webhook_id=delivery.webhook_id,
                    error=str(e),
                )
                continue

            if result.success:
                succeeded += 1
            else:
                failed += 1

        stats = RetryStats(processed=processed, succeeded=succeeded, failed=failed)
        logger.info("webhook_retry_pass_complete", **stats.model_dump())
        return stats

    async def retry_delivery(self, delivery_id: str) -> DispatchResult:
        """Retry one delivery immediately, regardless of its schedule.

        Raises:
            NotFoundError: If the delivery does not exist.
            InvalidTransitionError: If the delivery already succeeded or failed.
        """
        delivery = await self._deliveries.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        if delivery.is_terminal:
            raise InvalidTransitionError(delivery.id, delivery.status, "retrying")
        return await self._retry(delivery)

    async def _retry(self, delivery: WebhookDelivery) -> DispatchResult:
        webhook = await self._registry.get_webhook(delivery.webhook_id)
        if webhook is None or not webhook.active:
            error = "Webhook not found or inactive"
            delivery.mark_failed(self._clock(), error=error)
            await self._deliveries.update_delivery(delivery)
            logger.warning(
                "webhook_retry_endpoint_gone",
                delivery_id=delivery.id,
                webhook_id=delivery.webhook_id,
            )
            return DispatchResult(
                webhook_id=delivery.webhook_id,
                delivery_id=delivery.id,
                success=False,
                error=error,
            )

        return await self._dispatcher.attempt_delivery(webhook, delivery)
