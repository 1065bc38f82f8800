from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from storefront_ingest.core.logging import log_event
from storefront_ingest.core.metrics import ingestion_duration_seconds, ingestion_events_total
from storefront_ingest.db.repositories.sites import SiteRecord
from storefront_ingest.schemas.api import ALLOWED_ENTITY_TYPES, EventType, WebhookPayload
from storefront_ingest.services.ingestion import IngestionPipeline, IngestionResult
from storefront_ingest.services.retry_policy import is_retryable


class WebhookState(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    LEDGER_CHECKED = "ledger_checked"
    DUPLICATE = "duplicate"
    FETCHED = "fetched"
    DEDUPLICATED = "deduplicated"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    STORED = "stored"
    DELETED = "deleted"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYABLE = "retryable"


_ERROR_STATES = {WebhookState.FAILED, WebhookState.RETRYABLE}

ALLOWED_TRANSITIONS: dict[WebhookState, set[WebhookState]] = {
    WebhookState.RECEIVED: {WebhookState.AUTHENTICATED} | _ERROR_STATES,
    WebhookState.AUTHENTICATED: {WebhookState.LEDGER_CHECKED} | _ERROR_STATES,
    WebhookState.LEDGER_CHECKED: {WebhookState.DUPLICATE, WebhookState.FETCHED, WebhookState.DELETED} | _ERROR_STATES,
    WebhookState.FETCHED: {WebhookState.DEDUPLICATED} | _ERROR_STATES,
    WebhookState.DEDUPLICATED: {WebhookState.CHUNKED, WebhookState.COMPLETED} | _ERROR_STATES,
    WebhookState.CHUNKED: {WebhookState.EMBEDDED, WebhookState.COMPLETED} | _ERROR_STATES,
    WebhookState.EMBEDDED: {WebhookState.STORED} | _ERROR_STATES,
    WebhookState.STORED: {WebhookState.COMPLETED} | _ERROR_STATES,
    WebhookState.DELETED: {WebhookState.COMPLETED} | _ERROR_STATES,
    WebhookState.DUPLICATE: set(),
    WebhookState.COMPLETED: set(),
    WebhookState.FAILED: set(),
    WebhookState.RETRYABLE: set(),
}


class InvalidTransitionError(ValueError):
    pass


class WebhookRejectedError(Exception):
    """Request refused before any ledger row exists."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class IngestionFailedError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool, event_id: str) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.event_id = event_id


class WebhookStateMachine:
    def __init__(self, event_id: str | None = None):
        self.state = WebhookState.RECEIVED
        self.event_id = event_id

    def advance(self, next_state: WebhookState | str) -> None:
        target = WebhookState(next_state)
        if target not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(f"Invalid transition: {self.state.value} -> {target.value}")
        log_event(
            "webhook.transition",
            level=logging.DEBUG,
            payload={"from_state": self.state.value, "to_state": target.value, "event_id": self.event_id},
        )
        self.state = target


@dataclass(frozen=True)
class IngestionOutcome:
    status: str
    event_id: str
    embeddings_created: int = 0
    tokens_used: int = 0
    chunks_skipped: int = 0


def parse_webhook_payload(raw_body: bytes) -> WebhookPayload:
    try:
        body = json.loads(raw_body or b"")
    except ValueError as exc:
        raise WebhookRejectedError(400, "INVALID_FORMAT", "Request body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise WebhookRejectedError(400, "INVALID_FORMAT", "Request body must be a JSON object")
    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as exc:
        errors = exc.errors()
        missing = sorted({str(err["loc"][0]) for err in errors if err.get("type") == "missing" and err.get("loc")})
        if missing:
            raise WebhookRejectedError(
                400, "MISSING_REQUIRED_FIELD", f"Missing required fields: {', '.join(missing)}"
            ) from exc
        fields = sorted({str(err["loc"][0]) for err in errors if err.get("loc")})
        raise WebhookRejectedError(400, "INVALID_FORMAT", f"Invalid fields: {', '.join(fields)}") from exc
    allowed = ALLOWED_ENTITY_TYPES[payload.event]
    if payload.entity_type not in allowed:
        raise WebhookRejectedError(
            400,
            "INVALID_FORMAT",
            f"entity_type {payload.entity_type.value} is not valid for event {payload.event.value}",
        )
    return payload


PipelineFactory = Callable[[SiteRecord], IngestionPipeline]


class WebhookOrchestrator:
    def __init__(
        self,
        *,
        authenticator: Any,
        ledger: Any,
        vector_store: Any,
        pipeline_factory: PipelineFactory,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.authenticator = authenticator
        self.ledger = ledger
        self.vector_store = vector_store
        self.pipeline_factory = pipeline_factory
        self.clock = clock

    async def handle(
        self,
        *,
        method: str,
        path: str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> IngestionOutcome:
        machine = WebhookStateMachine()
        validation = await self.authenticator.validate(method, path, headers, raw_body)
        if not validation.valid:
            raise WebhookRejectedError(403, validation.error.code, validation.error.message)
        machine.advance(WebhookState.AUTHENTICATED)

        payload = parse_webhook_payload(raw_body)
        machine.event_id = payload.event_id
        log_event(
            "webhook.received",
            payload={
                "event_id": payload.event_id,
                "webhook_event": payload.event.value,
                "entity_type": payload.entity_type.value,
                "entity_id": payload.entity_id,
            },
        )

        claim = await self.ledger.try_begin_processing(
            site_id=validation.site_id,
            event_id=payload.event_id,
            event_type=payload.event.value,
            entity_type=payload.entity_type.value,
            entity_id=payload.entity_id,
            occurred_at=payload.occurred_at,
            metadata={"request_path": path},
        )
        machine.advance(WebhookState.LEDGER_CHECKED)
        if not claim.claimed:
            machine.advance(WebhookState.DUPLICATE)
            ingestion_events_total.labels(event_type=payload.event.value, result="duplicate").inc()
            log_event("webhook.duplicate", payload={"event_id": payload.event_id, "prior_status": claim.prior_status})
            return IngestionOutcome(status="duplicate", event_id=payload.event_id)

        started = self.clock()
        try:
            result = await self._process(machine, payload, validation.site)
            recorded = await self.ledger.finish(
                site_id=validation.site_id,
                event_id=payload.event_id,
                status="completed",
                metadata={
                    "embeddings_created": result.embeddings_created,
                    "tokens_used": result.tokens_used,
                    "chunks_skipped": result.chunks_skipped,
                    "attempts": claim.attempts,
                },
            )
        except asyncio.CancelledError:
            log_event(
                "webhook.cancelled",
                level=logging.WARNING,
                payload={"event_id": payload.event_id, "state": machine.state.value},
            )
            raise
        except Exception as exc:
            await self._record_failure(machine, payload, validation.site_id, exc, attempts=claim.attempts)
            ingestion_duration_seconds.labels(event_type=payload.event.value).observe(self.clock() - started)
            raise IngestionFailedError(str(exc) or type(exc).__name__, retryable=is_retryable(exc), event_id=payload.event_id) from exc

        if not recorded:
            error = await self._completion_not_recorded(machine, payload, validation.site_id)
            ingestion_duration_seconds.labels(event_type=payload.event.value).observe(self.clock() - started)
            raise error

        machine.advance(WebhookState.COMPLETED)
        ingestion_events_total.labels(event_type=payload.event.value, result="completed").inc()
        ingestion_duration_seconds.labels(event_type=payload.event.value).observe(self.clock() - started)
        log_event(
            "webhook.completed",
            payload={
                "event_id": payload.event_id,
                "embeddings_created": result.embeddings_created,
                "tokens_used": result.tokens_used,
                "chunks_skipped": result.chunks_skipped,
            },
        )
        return IngestionOutcome(
            status="processed",
            event_id=payload.event_id,
            embeddings_created=result.embeddings_created,
            tokens_used=result.tokens_used,
            chunks_skipped=result.chunks_skipped,
        )

    async def _process(self, machine: WebhookStateMachine, payload: WebhookPayload, site: SiteRecord) -> IngestionResult:
        if payload.is_deletion:
            deleted = await self.vector_store.delete_entity(
                site_id=site.site_id,
                entity_type=payload.entity_type.value,
                entity_id=payload.entity_id,
            )
            machine.advance(WebhookState.DELETED)
            log_event("webhook.entity_deleted", payload={"event_id": payload.event_id, "deleted": deleted})
            return IngestionResult(embeddings_created=0, tokens_used=0, chunks_skipped=0)

        pipeline = self.pipeline_factory(site)
        if payload.event == EventType.PRODUCT_UPDATED:
            return await pipeline.ingest_product(payload.entity_id, on_stage=machine.advance)
        return await pipeline.ingest_page(
            payload.entity_id,
            entity_type=payload.entity_type.value,
            on_stage=machine.advance,
        )

    async def _record_failure(
        self,
        machine: WebhookStateMachine,
        payload: WebhookPayload,
        site_id: str,
        exc: Exception,
        *,
        attempts: int,
    ) -> None:
        retryable = is_retryable(exc)
        status = "retryable" if retryable else "failed"
        machine.advance(WebhookState(status))
        ingestion_events_total.labels(event_type=payload.event.value, result=status).inc()
        log_event(
            "webhook.failed",
            level=logging.ERROR,
            payload={
                "event_id": payload.event_id,
                "ledger_status": status,
                "error_type": type(exc).__name__,
                "error_message": str(exc)[:512],
            },
        )
        try:
            # the failed statement may have aborted the shared transaction
            await self.ledger.rollback()
            await self.ledger.finish(
                site_id=site_id,
                event_id=payload.event_id,
                status=status,
                error_message=str(exc) or type(exc).__name__,
                metadata={"error_type": type(exc).__name__, "attempts": attempts},
            )
        except Exception as ledger_exc:
            log_event(
                "ledger.finish_failed",
                level=logging.ERROR,
                payload={
                    "event_id": payload.event_id,
                    "error_type": type(ledger_exc).__name__,
                    "error_message": str(ledger_exc)[:512],
                },
            )

    async def _completion_not_recorded(
        self,
        machine: WebhookStateMachine,
        payload: WebhookPayload,
        site_id: str,
    ) -> IngestionFailedError:
        """The row left ``processing`` under us, e.g. reclaimed by reconciliation; its status stands."""
        current = await self.ledger.get_event(site_id, payload.event_id)
        ledger_status = current.status if current is not None else None
        retryable = ledger_status != "failed"
        status = "retryable" if retryable else "failed"
        machine.advance(WebhookState(status))
        ingestion_events_total.labels(event_type=payload.event.value, result=status).inc()
        log_event(
            "webhook.completion_not_recorded",
            level=logging.WARNING,
            payload={"event_id": payload.event_id, "ledger_status": ledger_status},
        )
        return IngestionFailedError(
            f"Ledger holds status {ledger_status} instead of completed",
            retryable=retryable,
            event_id=payload.event_id,
        )
