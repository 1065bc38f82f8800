from __future__ import annotations

from dataclasses import dataclass

import httpx

from storefront_ingest.core.config import EmbeddingsConfig
from storefront_ingest.services.retry_policy import MalformedResponseError, UpstreamHTTPError

SOURCE = "embeddings"


@dataclass(frozen=True)
class EmbeddingResponse:
    vectors: list[list[float]]
    total_tokens: int


class EmbeddingsClient:
    """Async client for an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(self, config: EmbeddingsConfig):
        self.base_url = str(config.base_url).rstrip("/")
        self.api_key = config.api_key
        self.dimensions = int(config.dimensions)
        self.timeout_seconds = float(config.timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed_texts(self, texts: list[str], *, model: str) -> EmbeddingResponse:
        if not texts:
            return EmbeddingResponse(vectors=[], total_tokens=0)
        payload = {"model": model, "input": texts, "encoding_format": "float"}
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/v1/embeddings", json=payload, headers=self._headers())
        if response.status_code >= 400:
            raise UpstreamHTTPError(response.status_code, response.text[:512], source=SOURCE)
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("response body is not JSON", source=SOURCE) from exc
        return self._parse(body, expected=len(texts))

    def _parse(self, body: object, *, expected: int) -> EmbeddingResponse:
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise MalformedResponseError("response has no data array", source=SOURCE)
        items = body["data"]
        if len(items) != expected:
            raise MalformedResponseError(f"expected {expected} vectors, got {len(items)}", source=SOURCE)
        try:
            ordered = sorted(items, key=lambda item: int(item.get("index", 0)))
            vectors = [[float(x) for x in item["embedding"]] for item in ordered]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise MalformedResponseError("invalid embedding item", source=SOURCE) from exc
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise MalformedResponseError(
                    f"expected {self.dimensions}-dimensional vectors, got {len(vector)}",
                    source=SOURCE,
                )
        usage = body.get("usage") or {}
        try:
            total_tokens = int(usage.get("total_tokens") or 0)
        except (TypeError, ValueError, AttributeError) as exc:
            raise MalformedResponseError("invalid usage block", source=SOURCE) from exc
        return EmbeddingResponse(vectors=vectors, total_tokens=total_tokens)
