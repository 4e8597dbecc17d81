"""Qdrant storage backend.

Stores webhooks, delivery records and inbound failures as payload-only
points (a one-dimensional zero vector; nothing here is searched
semantically). Datetimes are kept twice: as ISO strings that round-trip
through the pydantic models, and as epoch floats (``*_ts``) that Qdrant
range filters and ordering can use.

Claims are a filtered ``set_payload`` that only matches while the record
is still due, followed by a read-back of a per-claim token. Whoever finds
their own token on the point owns the attempt.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from koya.config import settings
from koya.exceptions import StorageError
from koya.models import EventType, FailedWebhook, Webhook, WebhookDelivery

from .base import OPEN_STATUSES
from .retry import qdrant_retry

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", Webhook, WebhookDelivery, FailedWebhook)

COLLECTION_NAMES = {
    "webhook": "webhooks",
    "delivery": "webhook_deliveries",
    "failed_webhook": "failed_webhooks",
}

KEYWORD_INDEXES = {
    "webhook": ("tenant_id", "events"),
    "delivery": ("webhook_id", "status"),
    "failed_webhook": ("source", "status"),
}

FLOAT_INDEXES = ("next_retry_ts", "created_ts", "updated_ts")

VECTOR_SIZE = 1
SCROLL_PAGE_SIZE = 256


class QdrantWebhookStorage:
    """Qdrant-backed WebhookRegistry, DeliveryStore and FailedWebhookStore.

    Example:
        ```python
        async with QdrantWebhookStorage(url="http://localhost:6333") as storage:
            await storage.store_webhook(webhook)
        ```
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL. Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._client: AsyncQdrantClient | None = None

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Connect and create any missing collections."""
        self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantWebhookStorage:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{COLLECTION_NAMES[kind]}"

    @staticmethod
    def _key_to_point_id(kind: str, record_id: str) -> str:
        """Map a record id to a deterministic UUID-format point ID."""
        h = hashlib.sha256(f"{kind}/{record_id}".encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        existing = {c.name for c in (await self.client.get_collections()).collections}
        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            logger.info("Creating Qdrant collection %s", collection_name)
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=VECTOR_SIZE,
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind, collection_name)

    async def _create_indexes(self, kind: str, collection_name: str) -> None:
        for field_name in KEYWORD_INDEXES[kind]:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        if kind == "webhook":
            return
        for field_name in FLOAT_INDEXES:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.FLOAT,
            )

    @staticmethod
    def _to_payload(record: BaseModel) -> dict[str, Any]:
        data = record.model_dump(mode="json")
        for field_name in ("next_retry_at", "created_at", "updated_at"):
            if field_name not in type(record).model_fields:
                continue
            value: datetime | None = getattr(record, field_name)
            data[field_name.replace("_at", "_ts")] = value.timestamp() if value else None
        return data

    @staticmethod
    def _from_payload(payload: dict[str, Any], model_class: type[ModelT]) -> ModelT:
        fields = model_class.model_fields
        return model_class.model_validate({k: v for k, v in payload.items() if k in fields})

    async def _upsert(self, kind: str, record_id: str, record: BaseModel) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._key_to_point_id(kind, record_id),
                    vector=[0.0] * VECTOR_SIZE,
                    payload=self._to_payload(record),
                )
            ],
            wait=True,
        )

    async def _retrieve(self, kind: str, record_id: str) -> dict[str, Any] | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._key_to_point_id(kind, record_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return results[0].payload

    @staticmethod
    def _due_conditions(now: datetime) -> list[models.Condition]:
        return [
            models.FieldCondition(
                key="status",
                match=models.MatchAny(any=list(OPEN_STATUSES)),
            ),
            models.FieldCondition(
                key="next_retry_ts",
                range=models.Range(lte=now.timestamp()),
            ),
        ]

    async def _get_due(
        self,
        kind: str,
        now: datetime,
        limit: int,
        model_class: type[ModelT],
    ) -> list[ModelT]:
        results, _ = await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=models.Filter(must=self._due_conditions(now)),
            limit=limit,
            order_by=models.OrderBy(key="next_retry_ts", direction=models.Direction.ASC),
            with_payload=True,
        )
        return [self._from_payload(r.payload, model_class) for r in results if r.payload]

    async def _claim(
        self,
        kind: str,
        record_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        point_id = self._key_to_point_id(kind, record_id)
        token = uuid4().hex
        await self.client.set_payload(
            collection_name=self._collection_name(kind),
            payload={
                "next_retry_at": lease_until.isoformat(),
                "next_retry_ts": lease_until.timestamp(),
                "claim_token": token,
            },
            points=models.Filter(
                must=[models.HasIdCondition(has_id=[point_id]), *self._due_conditions(now)]
            ),
            wait=True,
        )
        payload = await self._retrieve(kind, record_id)
        return payload is not None and payload.get("claim_token") == token

    # Webhook registry

    @qdrant_retry
    async def store_webhook(self, webhook: Webhook) -> str:
        await self._upsert("webhook", webhook.id, webhook)
        return webhook.id

    @qdrant_retry
    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        payload = await self._retrieve("webhook", webhook_id)
        return self._from_payload(payload, Webhook) if payload else None

    @qdrant_retry
    async def list_active_endpoints_for_event(
        self,
        tenant_id: str,
        event_type: EventType,
    ) -> list[Webhook]:
        # MatchValue on a list payload matches when any element is equal
        subscribed = models.Filter(
            must=[
                models.FieldCondition(key="tenant_id", match=models.MatchValue(value=tenant_id)),
                models.FieldCondition(key="active", match=models.MatchValue(value=True)),
                models.FieldCondition(key="events", match=models.MatchValue(value=event_type)),
            ]
        )
        webhooks: list[Webhook] = []
        offset: models.ExtendedPointId | None = None
        while True:
            results, offset = await self.client.scroll(
                collection_name=self._collection_name("webhook"),
                scroll_filter=subscribed,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
            )
            webhooks.extend(self._from_payload(r.payload, Webhook) for r in results if r.payload)
            if offset is None:
                return webhooks

    # Delivery store

    @qdrant_retry
    async def create_delivery(self, delivery: WebhookDelivery) -> str:
        await self._upsert("delivery", delivery.id, delivery)
        return delivery.id

    @qdrant_retry
    async def update_delivery(self, delivery: WebhookDelivery) -> str:
        await self._upsert("delivery", delivery.id, delivery)
        return delivery.id

    @qdrant_retry
    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        payload = await self._retrieve("delivery", delivery_id)
        return self._from_payload(payload, WebhookDelivery) if payload else None

    @qdrant_retry
    async def get_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        return await self._get_due("delivery", now, limit, WebhookDelivery)

    @qdrant_retry
    async def claim_delivery(
        self,
        delivery_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        return await self._claim("delivery", delivery_id, now, lease_until)

    @qdrant_retry
    async def list_deliveries(self, webhook_id: str, limit: int = 100) -> list[WebhookDelivery]:
        results, _ = await self.client.scroll(
            collection_name=self._collection_name("delivery"),
            scroll_filter=models.Filter(
                must=[
                    models.FieldCondition(
                        key="webhook_id",
                        match=models.MatchValue(value=webhook_id),
                    )
                ]
            ),
            limit=limit,
            order_by=models.OrderBy(key="created_ts", direction=models.Direction.DESC),
            with_payload=True,
        )
        return [self._from_payload(r.payload, WebhookDelivery) for r in results if r.payload]

    # Failed webhook store

    @qdrant_retry
    async def insert_failed_webhook(self, record: FailedWebhook) -> str:
        await self._upsert("failed_webhook", record.id, record)
        return record.id

    @qdrant_retry
    async def get_failed_webhook(self, record_id: str) -> FailedWebhook | None:
        payload = await self._retrieve("failed_webhook", record_id)
        return self._from_payload(payload, FailedWebhook) if payload else None

    @qdrant_retry
    async def update_failed_webhook(self, record: FailedWebhook) -> str:
        await self._upsert("failed_webhook", record.id, record)
        return record.id

    @qdrant_retry
    async def get_due_failed_webhooks(self, now: datetime, limit: int) -> list[FailedWebhook]:
        return await self._get_due("failed_webhook", now, limit, FailedWebhook)

    @qdrant_retry
    async def claim_failed_webhook(
        self,
        record_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        return await self._claim("failed_webhook", record_id, now, lease_until)

    @qdrant_retry
    async def list_failed_webhooks(self) -> list[FailedWebhook]:
        records: list[FailedWebhook] = []
        offset: models.ExtendedPointId | None = None
        while True:
            results, offset = await self.client.scroll(
                collection_name=self._collection_name("failed_webhook"),
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
            )
            records.extend(
                self._from_payload(r.payload, FailedWebhook) for r in results if r.payload
            )
            if offset is None:
                return records

    @qdrant_retry
    async def delete_succeeded_before(self, cutoff: datetime) -> int:
        collection = self._collection_name("failed_webhook")
        expired = models.Filter(
            must=[
                models.FieldCondition(key="status", match=models.MatchValue(value="success")),
                models.FieldCondition(key="updated_ts", range=models.Range(lt=cutoff.timestamp())),
            ]
        )
        count = (await self.client.count(collection, count_filter=expired, exact=True)).count
        if count:
            await self.client.delete(
                collection_name=collection,
                points_selector=models.FilterSelector(filter=expired),
                wait=True,
            )
        return count
