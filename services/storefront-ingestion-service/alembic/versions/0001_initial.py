"""initial schema

Revision ID: 0001
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    site_status = sa.Enum("active", "disabled", "pending", "revoked", name="site_status")
    event_type = sa.Enum(
        "product.updated", "product.deleted", "page.updated", "page.deleted", "policy.updated",
        name="ingestion_event_type",
    )
    entity_type = sa.Enum("product", "page", "policy", name="entity_type")
    event_status = sa.Enum("pending", "processing", "completed", "failed", "retryable", name="ingestion_event_status")

    op.create_table(
        "sites",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("site_url", sa.String(2048), nullable=False),
        sa.Column("rest_base_url", sa.String(2048), nullable=True),
        sa.Column("secret", sa.String(255), nullable=False),
        sa.Column("status", site_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sites_tenant_id", "sites", ["tenant_id"])

    op.create_table(
        "ingestion_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("entity_type", entity_type, nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", event_status, nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("site_id", "event_id", name="uq_ingestion_events_site_event"),
    )
    op.create_index("ix_ingestion_events_site_id", "ingestion_events", ["site_id"])
    op.create_index("ix_ingestion_events_status", "ingestion_events", ["status"])
    op.create_index("ix_ingestion_events_entity", "ingestion_events", ["entity_type", "entity_id"])

    op.execute(
        """
        CREATE TABLE embeddings (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            site_id uuid NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
            tenant_id uuid NOT NULL,
            entity_type entity_type NOT NULL,
            entity_id varchar(255) NOT NULL,
            chunk_index integer NOT NULL,
            content_text text NOT NULL,
            embedding vector(1536) NOT NULL,
            model varchar(255) NOT NULL,
            version integer NOT NULL,
            chunk_hash varchar(64) NOT NULL,
            full_content_hash varchar(64) NOT NULL,
            start_char integer NOT NULL,
            end_char integer NOT NULL,
            token_count integer NOT NULL DEFAULT 0,
            metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
            created_at timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT uq_embeddings_entity_chunk_hash UNIQUE (site_id, entity_type, entity_id, chunk_hash)
        )
        """
    )
    op.create_index("ix_embeddings_site_id", "embeddings", ["site_id"])
    op.create_index("ix_embeddings_tenant_id", "embeddings", ["tenant_id"])
    op.create_index("ix_embeddings_entity_version", "embeddings", ["site_id", "entity_type", "entity_id", "version"])
    op.create_index(
        "ix_embeddings_full_content_hash",
        "embeddings",
        ["site_id", "entity_type", "entity_id", "full_content_hash"],
    )

    op.create_table(
        "signature_nonces",
        sa.Column("nonce", sa.String(255), primary_key=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_signature_nonces_observed_at", "signature_nonces", ["observed_at"])


def downgrade() -> None:
    op.drop_index("ix_signature_nonces_observed_at", table_name="signature_nonces")
    op.drop_table("signature_nonces")
    op.drop_index("ix_embeddings_full_content_hash", table_name="embeddings")
    op.drop_index("ix_embeddings_entity_version", table_name="embeddings")
    op.drop_index("ix_embeddings_tenant_id", table_name="embeddings")
    op.drop_index("ix_embeddings_site_id", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_index("ix_ingestion_events_entity", table_name="ingestion_events")
    op.drop_index("ix_ingestion_events_status", table_name="ingestion_events")
    op.drop_index("ix_ingestion_events_site_id", table_name="ingestion_events")
    op.drop_table("ingestion_events")
    op.drop_index("ix_sites_tenant_id", table_name="sites")
    op.drop_table("sites")

    for enum_name in ["ingestion_event_status", "entity_type", "ingestion_event_type", "site_status"]:
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
