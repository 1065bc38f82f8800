import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront_ingest.api.routes import router
from storefront_ingest.core.config import SignatureConfig, get_settings, signature_config
from storefront_ingest.core.logging import bind_request_id, clear_request_context, configure_logging, log_event
from storefront_ingest.services.signature import InMemoryNonceStore, NonceStore, PostgresNonceStore, prune_nonces_periodically

configure_logging()
settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


def build_nonce_store(cfg: SignatureConfig) -> NonceStore:
    if settings.NONCE_STORE_BACKEND == "postgres":
        from storefront_ingest.db.session import SessionLocal

        return PostgresNonceStore(SessionLocal, ttl_seconds=cfg.nonce_ttl_seconds)
    return InMemoryNonceStore(ttl_seconds=cfg.nonce_ttl_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    signing = signature_config(settings)
    app.state.nonce_store = build_nonce_store(signing)
    pruner = asyncio.create_task(
        prune_nonces_periodically(app.state.nonce_store, interval_seconds=signing.nonce_prune_interval_seconds)
    )
    log_event(
        "startup.completed",
        payload={
            "nonce_store_backend": settings.NONCE_STORE_BACKEND,
            "nonce_ttl_seconds": signing.nonce_ttl_seconds,
            "embeddings_model": settings.EMBEDDINGS_MODEL,
        },
        plane="control",
    )
    try:
        yield
    finally:
        pruner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pruner
        log_event("shutdown.completed", plane="control")


app = FastAPI(title="Storefront Ingestion Service API", version=settings.APP_VERSION, lifespan=lifespan)
app.include_router(router)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Binds the request id only. Sites are bound by the authenticator once a signature verifies."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    bind_request_id(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        log_event(
            "api.request.completed",
            level=logging.WARNING if status_code >= 500 else logging.INFO,
            payload={
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        clear_request_context()


def _envelope(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def error_envelope_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return _envelope(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail), exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    missing = sorted({str(err["loc"][-1]) for err in errors if err.get("type") == "missing" and err.get("loc")})
    if missing:
        return _envelope(400, "MISSING_REQUIRED_FIELD", f"Missing required fields: {', '.join(missing)}")
    fields = sorted({str(err["loc"][-1]) for err in errors if err.get("loc")})
    return _envelope(400, "INVALID_FORMAT", f"Invalid fields: {', '.join(fields)}")
