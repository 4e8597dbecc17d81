"""Storage backends for webhooks, delivery records and inbound failures."""

from __future__ import annotations

from typing import TYPE_CHECKING

from koya.exceptions import ConfigurationError

from .base import OPEN_STATUSES, DeliveryStore, FailedWebhookStore, WebhookRegistry, is_due
from .memory import InMemoryWebhookStorage
from .qdrant import QdrantWebhookStorage

if TYPE_CHECKING:
    from koya.config import Settings


def create_storage(settings: Settings) -> InMemoryWebhookStorage | QdrantWebhookStorage:
    """Build the backend selected by ``settings.storage_backend``.

    The Qdrant backend still needs ``initialize()`` before use.

    Raises:
        ConfigurationError: If the backend is not one this package provides.
    """
    if settings.storage_backend == "qdrant":
        return QdrantWebhookStorage(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
        )
    if settings.storage_backend == "memory":
        return InMemoryWebhookStorage()
    raise ConfigurationError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "OPEN_STATUSES",
    "DeliveryStore",
    "FailedWebhookStore",
    "InMemoryWebhookStorage",
    "QdrantWebhookStorage",
    "WebhookRegistry",
    "create_storage",
    "is_due",
]
