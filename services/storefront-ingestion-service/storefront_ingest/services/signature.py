from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import text

from storefront_ingest.core.config import SignatureConfig
from storefront_ingest.core.logging import bind_site_id, log_event
from storefront_ingest.core.metrics import signature_rejections_total
from storefront_ingest.db.repositories.sites import SiteRecord

HEADER_SITE = "X-AI-Site"
HEADER_TIMESTAMP = "X-AI-Ts"
HEADER_NONCE = "X-AI-Nonce"
HEADER_SIGNATURE = "X-AI-Sign"

SiteLookup = Callable[[str], Awaitable[SiteRecord | None]]


class NonceStore(Protocol):
    async def contains(self, nonce: str, now: float) -> bool: ...

    async def add_if_absent(self, nonce: str, now: float) -> bool: ...

    async def prune(self, now: float) -> int: ...


class InMemoryNonceStore:
    """Process-local replay cache; entries older than ``ttl_seconds`` count as unseen."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def _is_live(self, observed_at: float | None, now: float) -> bool:
        return observed_at is not None and now - observed_at <= self.ttl_seconds

    async def contains(self, nonce: str, now: float) -> bool:
        with self._lock:
            return self._is_live(self._seen.get(nonce), now)

    async def add_if_absent(self, nonce: str, now: float) -> bool:
        with self._lock:
            if self._is_live(self._seen.get(nonce), now):
                return False
            self._seen[nonce] = now
            return True

    async def prune(self, now: float) -> int:
        with self._lock:
            expired = [nonce for nonce, observed_at in self._seen.items() if now - observed_at > self.ttl_seconds]
            for nonce in expired:
                del self._seen[nonce]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class PostgresNonceStore:
    """Replay cache shared by every instance through the ``signature_nonces`` table."""

    def __init__(self, session_factory: Callable[[], Any], ttl_seconds: int):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _ts(value: float) -> datetime:
        return datetime.fromtimestamp(value, tz=timezone.utc)

    async def contains(self, nonce: str, now: float) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                text("SELECT 1 AS found FROM signature_nonces WHERE nonce = :nonce AND observed_at >= :cutoff"),
                {"nonce": nonce, "cutoff": self._ts(now - self.ttl_seconds)},
            )
            return result.mappings().first() is not None

    async def add_if_absent(self, nonce: str, now: float) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                text(
                    """
                    INSERT INTO signature_nonces (nonce, observed_at)
                    VALUES (:nonce, :observed_at)
                    ON CONFLICT (nonce) DO UPDATE
                    SET observed_at = EXCLUDED.observed_at
                    WHERE signature_nonces.observed_at < :cutoff
                    RETURNING nonce
                    """
                ),
                {"nonce": nonce, "observed_at": self._ts(now), "cutoff": self._ts(now - self.ttl_seconds)},
            )
            row = result.mappings().first()
            await db.commit()
            return row is not None

    async def prune(self, now: float) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                text("DELETE FROM signature_nonces WHERE observed_at < :cutoff"),
                {"cutoff": self._ts(now - self.ttl_seconds)},
            )
            await db.commit()
            return int(result.rowcount or 0)


@dataclass(frozen=True)
class SignatureError:
    code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class SignatureValidation:
    valid: bool
    site_id: str | None = None
    tenant_id: str | None = None
    shared_secret: str | None = None
    site: SiteRecord | None = None
    error: SignatureError | None = None


def body_hash(body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    if not body:
        return ""
    return hashlib.sha256(body).hexdigest()


def build_canonical_string(method: str, path: str, timestamp: str, nonce: str, body: bytes | str) -> str:
    return f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body_hash(body)}"


def compute_signature(secret: str, canonical: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signatures_match(provided: str, expected: str) -> bool:
    provided_bytes = provided.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    if len(provided_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(provided_bytes, expected_bytes)


def sign_request(
    method: str,
    path: str,
    body: bytes | str,
    *,
    site_id: str,
    secret: str,
    timestamp: int | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    ts = str(int(time.time()) if timestamp is None else timestamp)
    nonce_value = nonce or secrets.token_hex(16)
    canonical = build_canonical_string(method, path, ts, nonce_value, body)
    return {
        HEADER_SITE: site_id,
        HEADER_TIMESTAMP: ts,
        HEADER_NONCE: nonce_value,
        HEADER_SIGNATURE: compute_signature(secret, canonical),
    }


class SignatureAuthenticator:
    def __init__(
        self,
        *,
        site_lookup: SiteLookup,
        nonce_store: NonceStore,
        config: SignatureConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.site_lookup = site_lookup
        self.nonce_store = nonce_store
        self.config = config
        self.clock = clock

    def _reject(self, code: str, message: str, *, site_id: str | None = None) -> SignatureValidation:
        signature_rejections_total.labels(error_code=code).inc()
        log_event(
            "signature.rejected",
            level=logging.WARNING,
            payload={"error_code": code, "error_message": message, "site_id_header": site_id},
            plane="control",
        )
        return SignatureValidation(valid=False, error=SignatureError(code=code, message=message))

    async def validate(self, method: str, path: str, headers: Mapping[str, str], raw_body: bytes) -> SignatureValidation:
        lowered = {str(key).lower(): value for key, value in headers.items()}
        site_id = lowered.get(HEADER_SITE.lower())
        timestamp = lowered.get(HEADER_TIMESTAMP.lower())
        nonce = lowered.get(HEADER_NONCE.lower())
        signature = lowered.get(HEADER_SIGNATURE.lower())

        if not site_id or not timestamp or not nonce or not signature:
            return self._reject(
                "MISSING_REQUIRED_FIELD",
                f"Missing required signature headers ({HEADER_SITE}, {HEADER_TIMESTAMP}, {HEADER_NONCE}, {HEADER_SIGNATURE})",
                site_id=site_id,
            )

        try:
            timestamp_value = int(timestamp.strip())
        except ValueError:
            return self._reject("INVALID_FORMAT", "Invalid timestamp format", site_id=site_id)

        now = self.clock()
        drift = abs(int(now) - timestamp_value)
        if drift > self.config.timestamp_tolerance_seconds:
            return self._reject(
                "INVALID_TIMESTAMP",
                f"Timestamp outside ±{self.config.timestamp_tolerance_seconds}s window (diff: {drift}s)",
                site_id=site_id,
            )

        if await self.nonce_store.contains(nonce, now):
            return self._reject("NONCE_REUSED", "Nonce has been used before", site_id=site_id)

        site = await self.site_lookup(site_id)
        if site is None:
            return self._reject("SITE_NOT_FOUND", "Site not found", site_id=site_id)
        if not site.is_active:
            return self._reject("SITE_DISABLED", "Site is disabled", site_id=site_id)

        expected = compute_signature(site.secret, build_canonical_string(method, path, timestamp, nonce, raw_body))
        if not signatures_match(signature, expected):
            return self._reject("INVALID_SIGNATURE", "Signature validation failed", site_id=site_id)

        if not await self.nonce_store.add_if_absent(nonce, now):
            return self._reject("NONCE_REUSED", "Nonce has been used before", site_id=site_id)

        bind_site_id(site.site_id)
        return SignatureValidation(
            valid=True,
            site_id=site.site_id,
            tenant_id=site.tenant_id,
            shared_secret=site.secret,
            site=site,
        )


async def prune_nonces_periodically(
    store: NonceStore,
    *,
    interval_seconds: float,
    clock: Callable[[], float] = time.time,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.prune(clock())
        except Exception as exc:
            log_event(
                "signature.nonce_prune_failed",
                level=logging.ERROR,
                payload={"error_type": type(exc).__name__, "error_message": str(exc)[:512]},
                plane="control",
            )
            continue
        if removed:
            log_event("signature.nonces_pruned", payload={"removed": removed}, plane="control")
