"""Models for the Koya webhook subsystem.

Outbound:
    - Webhook: Tenant endpoint subscription
    - WebhookPayload: Signed event body shared by all endpoints
    - WebhookDelivery: Delivery lifecycle record per (endpoint, event)
    - DispatchResult, RetryStats, DeliveryStats: Operation results

Inbound:
    - FailedWebhook: Provider webhook whose processing failed
    - FailedWebhookStats: Dead-letter queue counts
"""

from .base import Clock, generate_id, isoformat_utc, parse_timestamp, utc_now
from .failed_webhook import (
    ALL_WEBHOOK_SOURCES,
    FailedWebhook,
    FailedWebhookStats,
    FailedWebhookStatus,
    WebhookSource,
)
from .webhook import (
    ALL_EVENT_TYPES,
    RESPONSE_BODY_LIMIT,
    TERMINAL_STATUSES,
    DeliveryStats,
    DeliveryStatus,
    DispatchResult,
    EventType,
    RetryStats,
    Webhook,
    WebhookDelivery,
    WebhookPayload,
    generate_webhook_secret,
    is_event_type,
)

__all__ = [
    # Base helpers
    "Clock",
    "generate_id",
    "isoformat_utc",
    "parse_timestamp",
    "utc_now",
    # Outbound
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
    # Inbound
    "ALL_WEBHOOK_SOURCES",
    "FailedWebhook",
    "FailedWebhookStats",
    "FailedWebhookStatus",
    "WebhookSource",
]
