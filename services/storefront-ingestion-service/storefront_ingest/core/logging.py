"""JSON line logging with a fixed envelope.

Every record leaving the root handler carries ``ENVELOPE_FIELDS``. Service identity is
captured once in ``configure_logging``; request and site identity come from context
variables. The request id is bound by the HTTP middleware and the site id only after a
signature has been verified, so a log line never names a site the caller merely claimed.
"""

from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from storefront_ingest.core.config import get_settings

ENVELOPE_FIELDS = ("ts", "levelname", "service", "env", "event_type", "request_id", "site_id", "plane", "version")
EVENTS_LOGGER = "storefront_ingest.events"

_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_site_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("site_id", default=None)


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False, default=str)


class EnvelopeFilter(logging.Filter):
    """Fills envelope fields the record does not already carry."""

    def __init__(self, *, service: str, env: str, version: str):
        super().__init__()
        self._identity = {"service": service, "env": env, "version": version}

    def filter(self, record: logging.LogRecord) -> bool:
        defaults = {
            **self._identity,
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "request_id": _request_id_ctx.get(),
            "site_id": _site_id_ctx.get(),
            "event_type": None,
            "plane": None,
        }
        for name, value in defaults.items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


def bind_request_id(request_id: str | None) -> None:
    _request_id_ctx.set(request_id)


def bind_site_id(site_id: str | None) -> None:
    _site_id_ctx.set(site_id)


def clear_request_context() -> None:
    _request_id_ctx.set(None)
    _site_id_ctx.set(None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def get_site_id() -> str | None:
    return _site_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    site_id: str | None = None,
    request_id: str | None = None,
    plane: str = "data",
) -> None:
    """Emit a named event; explicit ``site_id``/``request_id`` override the bound context."""
    extra = dict(payload or {})
    extra.update(event_type=event_type, plane=plane, site_id=site_id, request_id=request_id)
    logging.getLogger(EVENTS_LOGGER).log(level, event_type, extra=extra)


def configure_logging() -> None:
    cfg = get_settings()
    handler = logging.StreamHandler()
    handler.addFilter(EnvelopeFilter(service=cfg.APP_NAME, env=cfg.APP_ENV, version=cfg.APP_VERSION))
    handler.setFormatter(JsonLineFormatter(" ".join(f"%({name})s" for name in (*ENVELOPE_FIELDS, "message"))))
    root = logging.getLogger()
    root.setLevel(cfg.LOG_LEVEL.upper())
    root.handlers = [handler]
