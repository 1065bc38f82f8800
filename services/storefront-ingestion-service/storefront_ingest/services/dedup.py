from __future__ import annotations

import hashlib
from dataclasses import dataclass

from storefront_ingest.services.chunking import TextChunk


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class HashedChunk:
    chunk: TextChunk
    chunk_hash: str


@dataclass(frozen=True)
class ChunkSelection:
    pending: list[HashedChunk]
    skipped: int


def select_new_chunks(chunks: list[TextChunk], existing_hashes: set[str]) -> ChunkSelection:
    """Drop chunks whose hash is already stored for the entity.

    Repeated chunks inside one document are embedded once.
    """
    pending: list[HashedChunk] = []
    seen = set(existing_hashes)
    skipped = 0
    for chunk in chunks:
        digest = content_hash(chunk.text)
        if digest in seen:
            skipped += 1
            continue
        seen.add(digest)
        pending.append(HashedChunk(chunk=chunk, chunk_hash=digest))
    return ChunkSelection(pending=pending, skipped=skipped)
