import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from storefront_ingest.db.session import Base

EVENT_TYPE = ("product.updated", "product.deleted", "page.updated", "page.deleted", "policy.updated")
ENTITY_TYPE = ("product", "page", "policy")
EVENT_STATUS = ("pending", "processing", "completed", "failed", "retryable")
SITE_STATUS = ("active", "disabled", "pending", "revoked")

EMBEDDING_DIMENSIONS = 1536


class Sites(Base):
    __tablename__ = "sites"
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    site_url: Mapped[str] = mapped_column(String(2048))
    rest_base_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    secret: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(Enum(*SITE_STATUS, name="site_status"), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class IngestionEvents(Base):
    __tablename__ = "ingestion_events"
    __table_args__ = (
        UniqueConstraint("site_id", "event_id", name="uq_ingestion_events_site_event"),
        Index("ix_ingestion_events_status", "status"),
        Index("ix_ingestion_events_entity", "entity_type", "entity_id"),
    )
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("sites.id", ondelete="CASCADE"), index=True)
    event_id: Mapped[str] = mapped_column(String(255))
    event_type: Mapped[str] = mapped_column(Enum(*EVENT_TYPE, name="ingestion_event_type"))
    entity_type: Mapped[str] = mapped_column(Enum(*ENTITY_TYPE, name="entity_type"))
    entity_id: Mapped[str] = mapped_column(String(255))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(Enum(*EVENT_STATUS, name="ingestion_event_status"), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Embeddings(Base):
    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("site_id", "entity_type", "entity_id", "chunk_hash", name="uq_embeddings_entity_chunk_hash"),
        Index("ix_embeddings_entity_version", "site_id", "entity_type", "entity_id", "version"),
        Index("ix_embeddings_full_content_hash", "site_id", "entity_type", "entity_id", "full_content_hash"),
    )
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("sites.id", ondelete="CASCADE"), index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    entity_type: Mapped[str] = mapped_column(Enum(*ENTITY_TYPE, name="entity_type"))
    entity_id: Mapped[str] = mapped_column(String(255))
    chunk_index: Mapped[int] = mapped_column(Integer)
    content_text: Mapped[str] = mapped_column(Text)
    embedding = mapped_column(Vector(EMBEDDING_DIMENSIONS))
    model: Mapped[str] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer)
    chunk_hash: Mapped[str] = mapped_column(String(64))
    full_content_hash: Mapped[str] = mapped_column(String(64))
    start_char: Mapped[int] = mapped_column(Integer)
    end_char: Mapped[int] = mapped_column(Integer)
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SignatureNonces(Base):
    __tablename__ = "signature_nonces"
    nonce: Mapped[str] = mapped_column(String(255), primary_key=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
