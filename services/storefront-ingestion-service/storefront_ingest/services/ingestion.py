from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from storefront_ingest.core.config import ChunkingConfig
from storefront_ingest.core.logging import log_event
from storefront_ingest.db.repositories.embeddings import EmbeddingRow
from storefront_ingest.services.chunking import chunk_text
from storefront_ingest.services.dedup import content_hash, select_new_chunks
from storefront_ingest.services.text_builder import build_page_text, build_product_text


@dataclass(frozen=True)
class IngestionResult:
    embeddings_created: int
    tokens_used: int
    chunks_skipped: int
    unchanged: bool = False
    version: int | None = None


@dataclass(frozen=True)
class EntityDocument:
    entity_type: str
    entity_id: str
    text: str
    metadata: dict[str, Any]


StageCallback = Callable[[str], None]


def _noop_stage(_: str) -> None:
    return None


class IngestionPipeline:
    """fetch -> build text -> document dedup -> chunk -> chunk dedup -> embed -> store."""

    def __init__(
        self,
        *,
        site_id: str,
        tenant_id: str,
        content_client: Any,
        batcher: Any,
        vector_store: Any,
        chunking: ChunkingConfig,
        model: str,
    ):
        self.site_id = site_id
        self.tenant_id = tenant_id
        self.content_client = content_client
        self.batcher = batcher
        self.vector_store = vector_store
        self.chunking = chunking
        self.model = model

    async def ingest_product(self, product_id: str, *, on_stage: StageCallback = _noop_stage) -> IngestionResult:
        product = await self.content_client.get_product(product_id)
        on_stage("fetched")
        document = EntityDocument(
            entity_type="product",
            entity_id=str(product_id),
            text=build_product_text(product),
            metadata={"entity_title": product.title, "entity_url": product.url, "entity_type": "product"},
        )
        return await self._ingest_document(document, on_stage)

    async def ingest_page(
        self,
        page_id: str,
        *,
        entity_type: str = "page",
        on_stage: StageCallback = _noop_stage,
    ) -> IngestionResult:
        page = await self.content_client.get_page(page_id)
        on_stage("fetched")
        document = EntityDocument(
            entity_type=entity_type,
            entity_id=str(page_id),
            text=build_page_text(page),
            metadata={"entity_title": page.title, "entity_url": page.url, "entity_type": entity_type},
        )
        return await self._ingest_document(document, on_stage)

    async def _ingest_document(self, document: EntityDocument, on_stage: StageCallback) -> IngestionResult:
        full_hash = content_hash(document.text)
        unchanged = await self.vector_store.has_full_content_hash(
            site_id=self.site_id,
            entity_type=document.entity_type,
            entity_id=document.entity_id,
            full_content_hash=full_hash,
        )
        on_stage("deduplicated")
        if unchanged:
            log_event(
                "ingestion.skipped_unchanged",
                payload={"entity_type": document.entity_type, "entity_id": document.entity_id, "content_hash": full_hash},
                site_id=self.site_id,
            )
            return IngestionResult(embeddings_created=0, tokens_used=0, chunks_skipped=0, unchanged=True)

        chunks = chunk_text(document.text, self.chunking.chunk_size, self.chunking.overlap)
        existing_hashes = await self.vector_store.list_chunk_hashes(
            site_id=self.site_id,
            entity_type=document.entity_type,
            entity_id=document.entity_id,
        )
        selection = select_new_chunks(chunks, existing_hashes)
        on_stage("chunked")
        if not selection.pending:
            # nothing is written, so no row carries this full hash and redeliveries re-chunk
            log_event(
                "ingestion.all_chunks_known",
                payload={
                    "entity_type": document.entity_type,
                    "entity_id": document.entity_id,
                    "chunks_skipped": selection.skipped,
                },
                site_id=self.site_id,
            )
            return IngestionResult(embeddings_created=0, tokens_used=0, chunks_skipped=selection.skipped)

        batch = await self.batcher.embed_batch(selection.pending, model=self.model)
        on_stage("embedded")

        rows = [
            EmbeddingRow(
                chunk_index=item.chunk_index,
                content_text=item.text,
                embedding=item.embedding,
                chunk_hash=item.chunk_hash,
                start_char=item.start_char,
                end_char=item.end_char,
                token_count=item.token_count,
                metadata=dict(document.metadata),
            )
            for item in batch.embedded
        ]
        written = await self.vector_store.insert_version(
            site_id=self.site_id,
            tenant_id=self.tenant_id,
            entity_type=document.entity_type,
            entity_id=document.entity_id,
            model=batch.model,
            full_content_hash=full_hash,
            rows=rows,
        )
        on_stage("stored")
        log_event(
            "ingestion.entity_indexed",
            payload={
                "entity_type": document.entity_type,
                "entity_id": document.entity_id,
                "embeddings_created": written.inserted,
                "tokens_used": batch.total_tokens,
                "chunks_skipped": selection.skipped,
                "version": written.version,
            },
            site_id=self.site_id,
        )
        return IngestionResult(
            embeddings_created=written.inserted,
            tokens_used=batch.total_tokens,
            chunks_skipped=selection.skipped,
            version=written.version,
        )
