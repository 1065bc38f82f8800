from __future__ import annotations

from prometheus_client import Counter, Histogram

ingestion_events_total = Counter(
    "ingestion_events_total",
    "Webhook ingestion events by final outcome",
    ["event_type", "result"],
)
ingestion_duration_seconds = Histogram(
    "ingestion_duration_seconds",
    "End-to-end ingestion duration (seconds)",
    ["event_type"],
)
retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retries scheduled by the retry policy engine",
    ["operation"],
)
embedding_tokens_total = Counter(
    "embedding_tokens_total",
    "Tokens reported by the embedding provider",
    ["model"],
)
signature_rejections_total = Counter(
    "signature_rejections_total",
    "Inbound requests rejected by signature validation",
    ["error_code"],
)
