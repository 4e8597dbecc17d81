"""Retry policy shared by outbound deliveries and inbound failures.

Both halves use the same fixed backoff table and the same attempt cap:

    retry index  0      1      2       3     4+
    delay        1 min  5 min  15 min  1 h   4 h
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from koya.models import WebhookDelivery

RETRY_DELAYS: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=4),
)

DEFAULT_MAX_ATTEMPTS = 5


def retry_delay(retry_index: int, delays: tuple[timedelta, ...] = RETRY_DELAYS) -> timedelta:
    """Delay before the retry with the given 0-based index.

    Indexes past the end of the table reuse its last entry.

    Raises:
        ValueError: If retry_index is negative.
    """
    if retry_index < 0:
        raise ValueError(f"retry_index must be >= 0, got {retry_index}")
    return delays[min(retry_index, len(delays) - 1)]


def next_retry_at(
    retry_index: int,
    now: datetime,
    delays: tuple[timedelta, ...] = RETRY_DELAYS,
) -> datetime:
    """When the retry with the given index becomes due."""
    return now + retry_delay(retry_index, delays)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff table plus attempt cap.

    Attributes:
        delays: Delay per retry index; the last entry is the cap.
        max_attempts: Default attempt limit for new records.
    """

    delays: tuple[timedelta, ...] = RETRY_DELAYS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if not self.delays:
            raise ValueError("RetryPolicy needs at least one delay")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, retry_index: int) -> timedelta:
        return retry_delay(retry_index, self.delays)

    def next_retry_at(self, retry_index: int, now: datetime) -> datetime:
        return next_retry_at(retry_index, now, self.delays)

    def apply_delivery_failure(
        self,
        delivery: WebhookDelivery,
        now: datetime,
        error: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> WebhookDelivery:
        """Turn a failed attempt into a retry or a terminal failure.

        Expects ``delivery.start_attempt`` to have been called for the
        attempt that failed. The first failure is retried after
        ``delays[0]``, the second after ``delays[1]`` and so on.
        """
        if delivery.attempts_exhausted:
            return delivery.mark_failed(
                now,
                error=f"Max attempts exceeded: {error}",
                response_code=response_code,
                response_body=response_body,
            )
        return delivery.mark_retrying(
            next_retry_at=self.next_retry_at(delivery.attempt_count - 1, now),
            error=error,
            response_code=response_code,
            response_body=response_body,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()
