import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from storefront_ingest.api.dependencies import get_authenticator, get_orchestrator
from storefront_ingest.core.config import get_settings
from storefront_ingest.db.models import ENTITY_TYPE, EVENT_STATUS
from storefront_ingest.db.repositories.embeddings import VectorStoreWriter
from storefront_ingest.db.repositories.ingestion_events import EventLedger
from storefront_ingest.db.session import get_db
from storefront_ingest.schemas.api import (
    HealthResponse,
    IngestionStatusResponse,
    ReadinessCheck,
    ReadinessResponse,
    RecentEvent,
    WebhookResponse,
)
from storefront_ingest.services.orchestrator import IngestionFailedError, WebhookOrchestrator, WebhookRejectedError
from storefront_ingest.services.signature import SignatureAuthenticator

router = APIRouter()
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5


def _error_detail(code: str, message: str, details: dict | None = None) -> dict:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"error": error}


def _signed_path(request: Request) -> str:
    if request.url.query:
        return f"{request.url.path}?{request.url.query}"
    return request.url.path


async def _cancel_on_disconnect(request: Request, task: asyncio.Task) -> None:
    while not task.done():
        if await request.is_disconnected():
            logger.warning("client_disconnected", extra={"event_type": "webhook.client_disconnected"})
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post("/api/ingestion/webhook", response_model=WebhookResponse)
async def ingestion_webhook(
    request: Request,
    orchestrator: WebhookOrchestrator = Depends(get_orchestrator),
) -> WebhookResponse:
    raw_body = await request.body()
    task = asyncio.create_task(
        orchestrator.handle(
            method=request.method,
            path=_signed_path(request),
            headers=request.headers,
            raw_body=raw_body,
        )
    )
    watcher = asyncio.create_task(_cancel_on_disconnect(request, task))
    try:
        outcome = await task
    except WebhookRejectedError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc
    except IngestionFailedError as exc:
        raise HTTPException(
            status_code=500,
            detail=_error_detail(
                "INGESTION_FAILED",
                exc.message,
                {"event_id": exc.event_id, "retryable": exc.retryable},
            ),
        ) from exc
    finally:
        watcher.cancel()

    if outcome.status == "duplicate":
        return WebhookResponse(status=outcome.status, event_id=outcome.event_id)
    return WebhookResponse(
        status=outcome.status,
        event_id=outcome.event_id,
        embeddings_created=outcome.embeddings_created,
        tokens_used=outcome.tokens_used,
        chunks_skipped=outcome.chunks_skipped,
    )


@router.get("/api/ingestion/status", response_model=IngestionStatusResponse)
async def ingestion_status(
    request: Request,
    site_id: str,
    db=Depends(get_db),
    authenticator: SignatureAuthenticator = Depends(get_authenticator),
) -> IngestionStatusResponse:
    validation = await authenticator.validate(request.method, _signed_path(request), request.headers, b"")
    if not validation.valid:
        raise HTTPException(status_code=403, detail=_error_detail(validation.error.code, validation.error.message))
    if validation.site_id != site_id.strip().lower():
        raise HTTPException(
            status_code=403,
            detail=_error_detail("SITE_MISMATCH", "site_id does not match the signing site"),
        )

    summary = await EventLedger(db).status_summary(validation.site_id)
    embeddings_count = await VectorStoreWriter(db).count_for_site(validation.site_id)
    by_status = {status: 0 for status in EVENT_STATUS}
    by_status.update(summary.by_status)
    by_entity_type = {entity_type: 0 for entity_type in ENTITY_TYPE}
    by_entity_type.update(summary.by_entity_type)
    return IngestionStatusResponse(
        site_id=validation.site_id,
        embeddings_count=embeddings_count,
        events_by_status=by_status,
        events_by_entity_type=by_entity_type,
        recent_events=[
            RecentEvent(
                event_id=event.event_id,
                event_type=event.event_type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                status=event.status,
                attempts=event.attempts,
                error_message=event.error_message,
                created_at=event.created_at,
                processed_at=event.processed_at,
            )
            for event in summary.recent_events
        ],
    )


async def _readiness_db_check(db) -> ReadinessCheck:
    try:
        await db.execute(text("SELECT 1"))
        return ReadinessCheck(ok=True)
    except Exception as exc:  # noqa: BLE001
        return ReadinessCheck(ok=False, detail=str(exc))


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(version=get_settings().APP_VERSION)


@router.get("/ready", response_model=ReadinessResponse)
async def ready(db=Depends(get_db)) -> ReadinessResponse:
    db_check = await _readiness_db_check(db)
    checks = {"db": db_check}
    logger.info("readiness_check", extra={"event_type": "readiness", "db_ok": db_check.ok})
    return ReadinessResponse(
        status="ok" if db_check.ok else "degraded",
        version=get_settings().APP_VERSION,
        checks=checks,
    )


@router.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
