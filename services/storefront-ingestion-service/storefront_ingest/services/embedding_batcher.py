from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from storefront_ingest.core.config import RetryPolicy
from storefront_ingest.core.logging import log_event
from storefront_ingest.core.metrics import embedding_tokens_total
from storefront_ingest.services.dedup import HashedChunk
from storefront_ingest.services.retry_policy import MalformedResponseError, with_retry


@dataclass(frozen=True)
class EmbeddedChunk:
    chunk_index: int
    text: str
    start_char: int
    end_char: int
    chunk_hash: str
    embedding: list[float]
    token_count: int


@dataclass(frozen=True)
class BatchEmbeddingResult:
    embedded: list[EmbeddedChunk]
    total_tokens: int
    model: str


def apportion_tokens(batch_total_tokens: int, batch_len: int) -> int:
    """Approximate per-chunk usage; the provider only reports a batch total."""
    if batch_len <= 0:
        return 0
    return math.ceil(batch_total_tokens / batch_len)


class EmbeddingBatcher:
    def __init__(
        self,
        client: Any,
        *,
        batch_size: int,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.client = client
        self.batch_size = batch_size
        self.retry_policy = retry_policy
        self.sleep = sleep

    async def embed_batch(self, chunks: list[HashedChunk], *, model: str) -> BatchEmbeddingResult:
        embedded: list[EmbeddedChunk] = []
        total_tokens = 0
        for start in range(0, len(chunks), self.batch_size):
            batch = chunks[start : start + self.batch_size]
            texts = [item.chunk.text for item in batch]
            response = await with_retry(
                partial(self.client.embed_texts, texts, model=model),
                self.retry_policy,
                operation_name="embeddings.batch",
                sleep=self.sleep,
            )
            if len(response.vectors) != len(batch):
                raise MalformedResponseError(
                    f"expected {len(batch)} vectors, got {len(response.vectors)}",
                    source="embeddings",
                )
            per_chunk = apportion_tokens(response.total_tokens, len(batch))
            total_tokens += response.total_tokens
            embedding_tokens_total.labels(model=model).inc(response.total_tokens)
            for item, vector in zip(batch, response.vectors):
                embedded.append(
                    EmbeddedChunk(
                        chunk_index=item.chunk.index,
                        text=item.chunk.text,
                        start_char=item.chunk.start_char,
                        end_char=item.chunk.end_char,
                        chunk_hash=item.chunk_hash,
                        embedding=vector,
                        token_count=per_chunk,
                    )
                )
            log_event(
                "embeddings.batch_completed",
                payload={
                    "batch_start": start,
                    "batch_size": len(batch),
                    "batch_tokens": response.total_tokens,
                    "model": model,
                },
            )
        embedded.sort(key=lambda item: item.chunk_index)
        return BatchEmbeddingResult(embedded=embedded, total_tokens=total_tokens, model=model)
