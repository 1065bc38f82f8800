from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from storefront_ingest.core.logging import log_event
from storefront_ingest.db.errors import commit_or_raise, map_db_error


@dataclass(frozen=True)
class EmbeddingRow:
    chunk_index: int
    content_text: str
    embedding: list[float]
    chunk_hash: str
    start_char: int
    end_char: int
    token_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VersionWriteResult:
    version: int
    inserted: int
    skipped_conflicts: int


def _to_vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(f"{float(x):.8f}" for x in embedding) + "]"


class VectorStoreWriter:
    """Append-only, versioned embedding rows per ``(site_id, entity_type, entity_id)``."""

    def __init__(self, db: Any):
        self.db = db

    async def has_full_content_hash(self, *, site_id: str, entity_type: str, entity_id: str, full_content_hash: str) -> bool:
        result = await self.db.execute(
            text(
                """
                SELECT 1 AS found
                FROM embeddings
                WHERE site_id = CAST(:site_id AS uuid) AND entity_type = :entity_type AND entity_id = :entity_id
                  AND full_content_hash = :full_content_hash
                LIMIT 1
                """
            ),
            {
                "site_id": site_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "full_content_hash": full_content_hash,
            },
        )
        return result.mappings().first() is not None

    async def list_chunk_hashes(self, *, site_id: str, entity_type: str, entity_id: str) -> set[str]:
        result = await self.db.execute(
            text(
                """
                SELECT DISTINCT chunk_hash
                FROM embeddings
                WHERE site_id = CAST(:site_id AS uuid) AND entity_type = :entity_type AND entity_id = :entity_id
                """
            ),
            {"site_id": site_id, "entity_type": entity_type, "entity_id": entity_id},
        )
        return {str(row["chunk_hash"]) for row in result.mappings().all() if row.get("chunk_hash")}

    async def insert_version(
        self,
        *,
        site_id: str,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        model: str,
        full_content_hash: str,
        rows: list[EmbeddingRow],
    ) -> VersionWriteResult:
        if not rows:
            raise ValueError("insert_version requires at least one row")

        try:
            version, inserted = await self._write_version(
                site_id=site_id,
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                model=model,
                full_content_hash=full_content_hash,
                rows=rows,
            )
        except DBAPIError as exc:
            await self.db.rollback()
            raise map_db_error(exc) from exc
        await commit_or_raise(self.db)

        skipped = len(rows) - inserted
        log_event(
            "vector_store.version_written",
            payload={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "version": version,
                "inserted": inserted,
                "skipped_conflicts": skipped,
            },
            site_id=site_id,
        )
        return VersionWriteResult(version=version, inserted=inserted, skipped_conflicts=skipped)

    async def _write_version(
        self,
        *,
        site_id: str,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        model: str,
        full_content_hash: str,
        rows: list[EmbeddingRow],
    ) -> tuple[int, int]:
        await self.db.execute(
            text("SELECT pg_advisory_xact_lock(hashtextextended(:lock_key, 0))"),
            {"lock_key": f"embeddings:{site_id}:{entity_type}:{entity_id}"},
        )
        next_version = await self.db.execute(
            text(
                """
                SELECT COALESCE(MAX(version), 0) + 1 AS next_version
                FROM embeddings
                WHERE site_id = CAST(:site_id AS uuid) AND entity_type = :entity_type AND entity_id = :entity_id
                """
            ),
            {"site_id": site_id, "entity_type": entity_type, "entity_id": entity_id},
        )
        version = int(next_version.mappings().first()["next_version"])

        inserted = 0
        for row in rows:
            result = await self.db.execute(
                text(
                    """
                    INSERT INTO embeddings (
                        site_id, tenant_id, entity_type, entity_id, chunk_index, content_text, embedding,
                        model, version, chunk_hash, full_content_hash, start_char, end_char, token_count,
                        metadata, created_at
                    ) VALUES (
                        CAST(:site_id AS uuid), CAST(:tenant_id AS uuid), :entity_type, :entity_id, :chunk_index,
                        :content_text, CAST(:embedding AS vector), :model, :version, :chunk_hash,
                        :full_content_hash, :start_char, :end_char, :token_count, CAST(:metadata AS jsonb), now()
                    )
                    ON CONFLICT (site_id, entity_type, entity_id, chunk_hash) DO NOTHING
                    RETURNING id
                    """
                ),
                {
                    "site_id": site_id,
                    "tenant_id": tenant_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "chunk_index": row.chunk_index,
                    "content_text": row.content_text,
                    "embedding": _to_vector_literal(row.embedding),
                    "model": model,
                    "version": version,
                    "chunk_hash": row.chunk_hash,
                    "full_content_hash": full_content_hash,
                    "start_char": row.start_char,
                    "end_char": row.end_char,
                    "token_count": row.token_count,
                    "metadata": json.dumps(row.metadata),
                },
            )
            if result.mappings().first() is not None:
                inserted += 1
        return version, inserted

    async def delete_entity(self, *, site_id: str, entity_type: str, entity_id: str) -> int:
        try:
            result = await self.db.execute(
                text(
                    """
                    DELETE FROM embeddings
                    WHERE site_id = CAST(:site_id AS uuid) AND entity_type = :entity_type AND entity_id = :entity_id
                    """
                ),
                {"site_id": site_id, "entity_type": entity_type, "entity_id": entity_id},
            )
        except DBAPIError as exc:
            await self.db.rollback()
            raise map_db_error(exc) from exc
        await commit_or_raise(self.db)
        deleted = int(result.rowcount or 0)
        log_event(
            "vector_store.entity_deleted",
            payload={"entity_type": entity_type, "entity_id": entity_id, "deleted": deleted},
            site_id=site_id,
        )
        return deleted

    async def count_for_site(self, site_id: str) -> int:
        result = await self.db.execute(
            text("SELECT COUNT(*) AS total FROM embeddings WHERE site_id = CAST(:site_id AS uuid)"),
            {"site_id": site_id},
        )
        row = result.mappings().first()
        return int(row["total"] or 0) if row else 0
