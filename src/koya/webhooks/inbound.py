"""Recovery for inbound provider webhooks whose processing failed.

When handling a Stripe, Retell or Twilio callback raises, the payload is
stored as a :class:`~koya.models.FailedWebhook` and the provider still
gets a 2xx, so it does not retry on its own schedule. The periodic
``/jobs/failed-webhook-retries`` job then replays stored payloads through
the registered handler for their source. Records that exhaust their
retries stay behind in the ``failed`` state as the dead-letter queue.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from koya.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from koya.logging import get_logger
from koya.models import (
    ALL_WEBHOOK_SOURCES,
    FailedWebhook,
    FailedWebhookStats,
    RetryStats,
    WebhookSource,
)
from koya.models.base import Clock, utc_now

from .backoff import DEFAULT_RETRY_POLICY, RetryPolicy

if TYPE_CHECKING:
    from koya.storage import FailedWebhookStore

logger = get_logger(__name__)

# Reprocesses one stored payload: handler(event_type, payload)
InboundHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

DEFAULT_BATCH_SIZE = 50
DEFAULT_RETENTION_DAYS = 7
DEFAULT_CLAIM_LEASE = timedelta(minutes=5)


def error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error


class InboundFailureStore:
    """Lifecycle operations on inbound failure records.

    Example:
        ```python
        failures = InboundFailureStore(storage)

        try:
            await process_stripe_event(event)
        except Exception as e:
            await failures.store_failed_webhook("stripe", event["type"], event, e)
        ```
    """

    def __init__(
        self,
        store: FailedWebhookStore,
        *,
        clock: Clock = utc_now,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        max_retries: int | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._policy = policy
        self._max_retries = max_retries or policy.max_attempts

    async def get(self, record_id: str) -> FailedWebhook:
        """Fetch a record.

        Raises:
            NotFoundError: If the record does not exist.
        """
        record = await self._store.get_failed_webhook(record_id)
        if record is None:
            raise NotFoundError("failed_webhook", record_id)
        return record

    async def store_failed_webhook(
        self,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        error: BaseException | str,
    ) -> FailedWebhook:
        """Persist a webhook whose processing failed; first retry in one minute.

        Raises:
            ValidationError: If the source is not a known provider.
        """
        if source not in ALL_WEBHOOK_SOURCES:
            raise ValidationError("source", f"Unknown webhook source: {source}")

        now = self._clock()
        record = FailedWebhook(
            source=source,  # type: ignore[arg-type]
            event_type=event_type,
            payload=payload,
            error_message=error_message(error),
            max_retries=self._max_retries,
            next_retry_at=self._policy.next_retry_at(0, now),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_failed_webhook(record)
        logger.warning(
            "inbound_webhook_stored_for_retry",
            failed_webhook_id=record.id,
            source=source,
            event_type=event_type,
            error=record.error_message,
        )
        return record

    async def mark_success(self, record_id: str) -> FailedWebhook:
        """Record that a retry processed the webhook."""
        record = await self.get(record_id)
        record.mark_success(self._clock())
        await self._store.update_failed_webhook(record)
        logger.info(
            "inbound_webhook_retry_succeeded",
            failed_webhook_id=record.id,
            source=record.source,
            retry_count=record.retry_count,
        )
        return record

    async def mark_failed(self, record_id: str, error: BaseException | str) -> FailedWebhook:
        """Record another failed retry.

        The retry count goes up by one. Once it reaches ``max_retries`` the
        record becomes terminal; otherwise the next retry is scheduled from
        the backoff table using the new count as the index.

        Raises:
            NotFoundError: If the record does not exist.
            InvalidTransitionError: If the record is already terminal.
        """
        record = await self.get(record_id)
        now = self._clock()
        message = error_message(error)
        retry_count = record.retry_count + 1

        if retry_count >= record.max_retries:
            record.mark_failed(now, retry_count, message)
            logger.error(
                "inbound_webhook_permanently_failed",
                failed_webhook_id=record.id,
                source=record.source,
                event_type=record.event_type,
                retry_count=retry_count,
                error=message,
            )
        else:
            record.mark_retrying(
                now,
                retry_count,
                self._policy.next_retry_at(retry_count, now),
                message,
            )
            logger.warning(
                "inbound_webhook_retry_scheduled",
                failed_webhook_id=record.id,
                source=record.source,
                retry_count=retry_count,
                next_retry_at=record.next_retry_at.isoformat() if record.next_retry_at else None,
            )

        await self._store.update_failed_webhook(record)
        return record

    async def get_webhooks_to_retry(self, limit: int = DEFAULT_BATCH_SIZE) -> list[FailedWebhook]:
        """Due records (pending or retrying, next_retry_at <= now), earliest first."""
        return await self._store.get_due_failed_webhooks(self._clock(), limit)

    async def claim(self, record_id: str, lease: timedelta = DEFAULT_CLAIM_LEASE) -> bool:
        now = self._clock()
        return await self._store.claim_failed_webhook(record_id, now, now + lease)

    async def get_stats(self) -> FailedWebhookStats:
        """Count records by status and by source."""
        stats = FailedWebhookStats()
        for record in await self._store.list_failed_webhooks():
            setattr(stats, record.status, getattr(stats, record.status) + 1)
            stats.by_source[record.source] = stats.by_source.get(record.source, 0) + 1
        return stats

    async def cleanup_old_webhooks(self, days_old: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete succeeded records older than ``days_old`` days.

        Failed records are kept for manual inspection.
        """
        cutoff = self._clock() - timedelta(days=days_old)
        deleted = await self._store.delete_succeeded_before(cutoff)
        logger.info("failed_webhooks_cleaned_up", deleted=deleted, days_old=days_old)
        return deleted


class InboundRetryProcessor:
    """Replays stored inbound webhooks through per-source handlers.

    Example:
        ```python
        processor = InboundRetryProcessor(failures)
        processor.register("stripe", handle_stripe_event)

        # Live path: store on failure, always acknowledge the provider
        await processor.handle("stripe", event["type"], event)

        # Periodic job
        stats = await processor.process_retries()
        ```
    """

    def __init__(
        self,
        failures: InboundFailureStore,
        handlers: dict[WebhookSource, InboundHandler] | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self._failures = failures
        self._handlers: dict[str, InboundHandler] = dict(handlers or {})
        self._batch_size = batch_size
        self._claim_lease = claim_lease

    @property
    def failures(self) -> InboundFailureStore:
        return self._failures

    def register(self, source: WebhookSource, handler: InboundHandler) -> None:
        """Set the handler used to reprocess webhooks from ``source``."""
        if source not in ALL_WEBHOOK_SOURCES:
            raise ValidationError("source", f"Unknown webhook source: {source}")
        self._handlers[source] = handler

    async def handle(self, source: WebhookSource, event_type: str, payload: dict[str, Any]) -> bool:
        """Process a freshly received webhook once.

        Returns:
            True if the handler succeeded. False if it raised, in which case
            the payload was stored for retry and the caller should still
            acknowledge the provider.

        Raises:
            ValidationError: If no handler is registered for the source.
        """
        handler = self._handlers.get(source)
        if handler is None:
            raise ValidationError("source", f"No handler registered for {source}")

        try:
            await handler(event_type, payload)
        except Exception as e:
            await self._failures.store_failed_webhook(source, event_type, payload, e)
            return False
        return True

    async def process_retries(self, limit: int | None = None) -> RetryStats:
        """Reprocess every due record in one batch, sequentially.

        Records whose source has no handler are pushed back by the claim
        lease and left out of the counts.
        """
        due = await self._failures.get_webhooks_to_retry(limit or self._batch_size)

        processed = succeeded = failed = deferred = 0
        for record in due:
            if not await self._failures.claim(record.id, self._claim_lease):
                logger.debug("inbound_retry_claim_lost", failed_webhook_id=record.id)
                continue

            # The claim lease pushes the record back; its retry count is untouched.
            if record.source not in self._handlers:
                deferred += 1
                logger.warning(
                    "inbound_retry_no_handler",
                    failed_webhook_id=record.id,
                    source=record.source,
                )
                continue

            processed += 1
            try:
                ok = await self._reprocess(record)
            except Exception as e:
                failed += 1
                logger.exception(
                    "inbound_retry_error",
                    failed_webhook_id=record.id,
                    source=record.source,
                    error=str(e),
                )
                continue

            if ok:
                succeeded += 1
            else:
                failed += 1

        stats = RetryStats(processed=processed, succeeded=succeeded, failed=failed)
        logger.info("inbound_retry_pass_complete", deferred=deferred, **stats.model_dump())
        return stats

    async def retry_single(self, record_id: str) -> bool:
        """Reprocess one record now, regardless of its schedule.

        Raises:
            NotFoundError: If the record does not exist.
            InvalidTransitionError: If the record already succeeded or failed.
            ValidationError: If no handler is registered for its source.
        """
        record = await self._failures.get(record_id)
        if record.is_terminal:
            raise InvalidTransitionError(record.id, record.status, "retrying")
        if record.source not in self._handlers:
            raise ValidationError("source", f"No handler registered for {record.source}")
        return await self._reprocess(record)

    async def _reprocess(self, record: FailedWebhook) -> bool:
        handler = self._handlers[record.source]
        try:
            await handler(record.event_type, record.payload)
        except Exception as e:
            await self._failures.mark_failed(record.id, e)
            return False

        await self._failures.mark_success(record.id)
        return True
