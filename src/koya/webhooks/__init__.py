"""Webhook delivery and recovery for Koya.

Outbound: tenant-configured endpoints receive signed notifications for
business events, with failed attempts retried on a fixed backoff table.
Inbound: provider webhooks that fail internal processing are stored and
replayed until they succeed or are dead-lettered.

Example:
    ```python
    from koya.webhooks import WebhookDispatcher, RetryScheduler

    dispatcher = WebhookDispatcher(storage, storage)
    await dispatcher.dispatch_call_started("biz_123", call_id="c1", started_at=now)

    scheduler = RetryScheduler(storage, storage, dispatcher)
    await scheduler.process_retries()
    ```
"""

from .backoff import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_POLICY,
    RETRY_DELAYS,
    RetryPolicy,
    next_retry_at,
    retry_delay,
)
from .dispatcher import (
    USER_AGENT,
    SendOutcome,
    WebhookDispatcher,
    build_headers,
    dispatch_webhook_event,
)
from .inbound import InboundFailureStore, InboundHandler, InboundRetryProcessor
from .retry import RetryScheduler
from .signing import (
    sign,
    verify_hmac_signature,
    verify_retell_signature,
    verify_signature,
    verify_stripe_signature,
    verify_twilio_signature,
)

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_POLICY",
    "RETRY_DELAYS",
    "USER_AGENT",
    "InboundFailureStore",
    "InboundHandler",
    "InboundRetryProcessor",
    "RetryPolicy",
    "RetryScheduler",
    "SendOutcome",
    "WebhookDispatcher",
    "build_headers",
    "dispatch_webhook_event",
    "next_retry_at",
    "retry_delay",
    "sign",
    "verify_hmac_signature",
    "verify_retell_signature",
    "verify_signature",
    "verify_stripe_signature",
    "verify_twilio_signature",
]
