"""Koya webhooks: signed outbound notifications and inbound recovery.

Quick Start:
    from koya.service import WebhookService

    async with WebhookService.create() as koya:
        # Notify every endpoint the tenant subscribed to this event
        results = await koya.dispatcher.dispatch_event(
            "biz_123",
            "appointment.booked",
            {"appointment_id": "a1", "customer_name": "Jane"},
        )

        # Periodic jobs
        await koya.scheduler.process_retries()
        await koya.processor.process_retries()

Receivers verify X-Koya-Signature with koya.webhooks.verify_signature.
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidTransitionError,
    KoyaError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Models
from .models import (
    DeliveryStats,
    DispatchResult,
    EventType,
    FailedWebhook,
    FailedWebhookStats,
    RetryStats,
    Webhook,
    WebhookDelivery,
    WebhookPayload,
)

# Service
from .service import WebhookService

# Webhooks
from .webhooks import (
    InboundFailureStore,
    InboundRetryProcessor,
    RetryPolicy,
    RetryScheduler,
    WebhookDispatcher,
    sign,
    verify_signature,
)

__all__ = [
    "__version__",
    "Settings",
    "settings",
    "AuthenticationError",
    "ConfigurationError",
    "InvalidTransitionError",
    "KoyaError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "DeliveryStats",
    "DispatchResult",
    "EventType",
    "FailedWebhook",
    "FailedWebhookStats",
    "RetryStats",
    "Webhook",
    "WebhookDelivery",
    "WebhookPayload",
    "WebhookService",
    "InboundFailureStore",
    "InboundRetryProcessor",
    "RetryPolicy",
    "RetryScheduler",
    "WebhookDispatcher",
    "sign",
    "verify_signature",
]
