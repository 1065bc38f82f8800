from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PAGE_UPDATED = "page.updated"
    PAGE_DELETED = "page.deleted"
    POLICY_UPDATED = "policy.updated"


class EntityType(str, Enum):
    PRODUCT = "product"
    PAGE = "page"
    POLICY = "policy"


ALLOWED_ENTITY_TYPES: dict[EventType, frozenset[EntityType]] = {
    EventType.PRODUCT_UPDATED: frozenset({EntityType.PRODUCT}),
    EventType.PRODUCT_DELETED: frozenset({EntityType.PRODUCT}),
    EventType.PAGE_UPDATED: frozenset({EntityType.PAGE, EntityType.POLICY}),
    EventType.PAGE_DELETED: frozenset({EntityType.PAGE, EntityType.POLICY}),
    EventType.POLICY_UPDATED: frozenset({EntityType.POLICY}),
}


class WebhookPayload(BaseModel):
    event_id: str = Field(min_length=1, max_length=255)
    event: EventType
    entity_type: EntityType
    entity_id: str = Field(min_length=1, max_length=255)
    occurred_at: datetime

    @property
    def is_deletion(self) -> bool:
        return self.event in {EventType.PRODUCT_DELETED, EventType.PAGE_DELETED}


class WebhookResponse(BaseModel):
    status: str
    event_id: str
    embeddings_created: int | None = None
    tokens_used: int | None = None
    chunks_skipped: int | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorInfo


class RecentEvent(BaseModel):
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    status: str
    attempts: int
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


class IngestionStatusResponse(BaseModel):
    site_id: str
    embeddings_count: int
    events_by_status: dict[str, int]
    events_by_entity_type: dict[str, int]
    recent_events: list[RecentEvent]


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "storefront-ingestion-service"
    version: str


class ReadinessCheck(BaseModel):
    ok: bool
    detail: str | None = None


class ReadinessResponse(BaseModel):
    status: str
    service: str = "storefront-ingestion-service"
    version: str
    checks: dict[str, ReadinessCheck]
