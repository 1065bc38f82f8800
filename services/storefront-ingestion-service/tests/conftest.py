"""Shared fakes for storefront ingestion tests.

``FakeDatabase`` keeps table state in memory and interprets the SQL statements the
repositories issue. Every ``FakeSession.execute`` yields to the event loop first, so
concurrent coroutines interleave the way they would against a real connection pool.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, InternalError

from storefront_ingest.clients.embeddings_client import EmbeddingResponse
from storefront_ingest.db.repositories.sites import SiteRecord
from storefront_ingest.schemas.content import PageContent, ProductCard

SITE_ID = "11111111-1111-1111-1111-111111111111"
TENANT_ID = "22222222-2222-2222-2222-222222222222"
SITE_SECRET = "test-shared-secret"


class FakeMappings:
    def __init__(self, rows: list[dict]):
        self._rows = rows

    def first(self):
        return self._rows[0] if self._rows else None

    def all(self):
        return list(self._rows)


class FakeResult:
    def __init__(self, rows: list[dict] | None = None, rowcount: int = 0):
        self._rows = rows or []
        self.rowcount = rowcount

    def mappings(self):
        return FakeMappings(self._rows)


def _unique_violation(sql: str, params: dict) -> IntegrityError:
    return IntegrityError(sql, params, SimpleNamespace(sqlstate="23505"))


class FakeDatabase:
    def __init__(self):
        self.sites: dict[str, dict] = {}
        self.events: dict[tuple[str, str], dict] = {}
        self.embeddings: list[dict] = []
        self.nonces: dict[str, datetime] = {}
        self.statements: list[str] = []
        self.advisory_locks: list[str] = []
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._seq = 0
        self._injected_failures: list[tuple[str, BaseException]] = []

    def session(self) -> "FakeSession":
        return FakeSession(self)

    def add_site(self, *, site_id: str = SITE_ID, secret: str = SITE_SECRET, status: str = "active") -> SiteRecord:
        self.sites[site_id] = {
            "site_id": site_id,
            "tenant_id": TENANT_ID,
            "site_url": "https://shop.example.com",
            "rest_base_url": None,
            "secret": secret,
            "status": status,
        }
        return SiteRecord(**self.sites[site_id])

    def fail_next(self, sql_prefix: str, exc: BaseException) -> None:
        """Raise ``exc`` from the next statement starting with ``sql_prefix``."""
        self._injected_failures.append((sql_prefix, exc))

    def tick(self) -> datetime:
        self._seq += 1
        return self.now + timedelta(microseconds=self._seq)

    def event(self, site_id: str, event_id: str) -> dict | None:
        return self.events.get((site_id, event_id))

    def entity_rows(self, site_id: str, entity_type: str, entity_id: str) -> list[dict]:
        return [
            row
            for row in self.embeddings
            if row["site_id"] == site_id and row["entity_type"] == entity_type and row["entity_id"] == entity_id
        ]

    def dispatch(self, sql: str, params: dict) -> FakeResult:
        self.statements.append(sql)
        for position, (prefix, exc) in enumerate(self._injected_failures):
            if sql.startswith(prefix):
                del self._injected_failures[position]
                raise exc
        if sql == "SELECT 1":
            return FakeResult([{"?column?": 1}])
        if "FROM sites" in sql:
            row = self.sites.get(params["site_id"])
            return FakeResult([dict(row)] if row else [])
        if "signature_nonces" in sql:
            return self._nonces(sql, params)
        if "ingestion_events" in sql:
            return self._events(sql, params)
        if "embeddings" in sql or "pg_advisory_xact_lock" in sql:
            return self._embeddings(sql, params)
        raise AssertionError(f"unexpected SQL: {sql}")

    def _events(self, sql: str, params: dict) -> FakeResult:
        if sql.startswith("INSERT INTO ingestion_events"):
            key = (params["site_id"], params["event_id"])
            if key in self.events:
                raise _unique_violation(sql, params)
            stamp = self.tick()
            self.events[key] = {
                "site_id": params["site_id"],
                "event_id": params["event_id"],
                "event_type": params["event_type"],
                "entity_type": params["entity_type"],
                "entity_id": params["entity_id"],
                "occurred_at": params["occurred_at"],
                "status": "processing",
                "attempts": 1,
                "error_message": None,
                "metadata": json.loads(params["metadata"]),
                "created_at": stamp,
                "updated_at": stamp,
                "processed_at": None,
            }
            return FakeResult(rowcount=1)
        if sql.startswith("UPDATE ingestion_events SET status = 'processing'"):
            row = self.event(params["site_id"], params["event_id"])
            if row is None or row["status"] != "retryable":
                return FakeResult()
            row.update(
                status="processing",
                attempts=row["attempts"] + 1,
                error_message=None,
                occurred_at=params["occurred_at"],
                processed_at=None,
                updated_at=self.tick(),
            )
            return FakeResult([{"attempts": row["attempts"]}], rowcount=1)
        if sql.startswith("UPDATE ingestion_events SET status = 'retryable'"):
            row = self.event(params["site_id"], params["event_id"])
            if row is None or row["status"] != "processing" or not row["updated_at"] < params["cutoff"]:
                return FakeResult()
            row.update(status="retryable", error_message=params["error_message"], updated_at=self.tick())
            return FakeResult([{"status": "retryable"}], rowcount=1)
        if sql.startswith("UPDATE ingestion_events SET status = :status"):
            row = self.event(params["site_id"], params["event_id"])
            if row is None or row["status"] != "processing":
                return FakeResult()
            stamp = self.tick()
            row.update(
                status=params["status"],
                error_message=params["error_message"],
                metadata={**row["metadata"], **json.loads(params["metadata"])},
                processed_at=stamp,
                updated_at=stamp,
            )
            return FakeResult([{"status": row["status"]}], rowcount=1)
        if sql.startswith("SELECT status, entity_type, COUNT(*)"):
            counts: dict[tuple[str, str], int] = {}
            for row in self.events.values():
                if row["site_id"] == params["site_id"]:
                    key = (row["status"], row["entity_type"])
                    counts[key] = counts.get(key, 0) + 1
            return FakeResult([{"status": s, "entity_type": e, "total": n} for (s, e), n in counts.items()])
        if "ORDER BY created_at DESC" in sql:
            rows = sorted(
                (row for row in self.events.values() if row["site_id"] == params["site_id"]),
                key=lambda row: row["created_at"],
                reverse=True,
            )
            return FakeResult([dict(row) for row in rows[: params["limit_n"]]])
        if "WHERE status = 'processing' AND updated_at < :cutoff" in sql:
            rows = [
                dict(row)
                for row in self.events.values()
                if row["status"] == "processing" and row["updated_at"] < params["cutoff"]
            ]
            return FakeResult(sorted(rows, key=lambda row: row["updated_at"]))
        if sql.startswith("SELECT"):
            row = self.event(params["site_id"], params["event_id"])
            return FakeResult([dict(row)] if row else [])
        raise AssertionError(f"unexpected ingestion_events SQL: {sql}")

    def _embeddings(self, sql: str, params: dict) -> FakeResult:
        if "pg_advisory_xact_lock" in sql:
            self.advisory_locks.append(params["lock_key"])
            return FakeResult([{"pg_advisory_xact_lock": None}])
        if sql.startswith("SELECT 1 AS found FROM embeddings"):
            rows = self.entity_rows(params["site_id"], params["entity_type"], params["entity_id"])
            found = any(row["full_content_hash"] == params["full_content_hash"] for row in rows)
            return FakeResult([{"found": 1}] if found else [])
        if sql.startswith("SELECT DISTINCT chunk_hash"):
            rows = self.entity_rows(params["site_id"], params["entity_type"], params["entity_id"])
            return FakeResult([{"chunk_hash": h} for h in sorted({row["chunk_hash"] for row in rows})])
        if sql.startswith("SELECT COALESCE(MAX(version), 0) + 1"):
            rows = self.entity_rows(params["site_id"], params["entity_type"], params["entity_id"])
            return FakeResult([{"next_version": max((row["version"] for row in rows), default=0) + 1}])
        if sql.startswith("INSERT INTO embeddings"):
            rows = self.entity_rows(params["site_id"], params["entity_type"], params["entity_id"])
            if any(row["chunk_hash"] == params["chunk_hash"] for row in rows):
                return FakeResult()
            row = dict(params)
            row["id"] = str(uuid.uuid4())
            row["metadata"] = json.loads(params["metadata"])
            row["embedding"] = json.loads(params["embedding"])
            self.embeddings.append(row)
            return FakeResult([{"id": row["id"]}], rowcount=1)
        if sql.startswith("DELETE FROM embeddings"):
            doomed = self.entity_rows(params["site_id"], params["entity_type"], params["entity_id"])
            self.embeddings = [row for row in self.embeddings if row not in doomed]
            return FakeResult(rowcount=len(doomed))
        if sql.startswith("SELECT COUNT(*) AS total FROM embeddings"):
            return FakeResult([{"total": sum(1 for row in self.embeddings if row["site_id"] == params["site_id"])}])
        raise AssertionError(f"unexpected embeddings SQL: {sql}")

    def _nonces(self, sql: str, params: dict) -> FakeResult:
        if sql.startswith("SELECT"):
            observed = self.nonces.get(params["nonce"])
            return FakeResult([{"found": 1}] if observed and observed >= params["cutoff"] else [])
        if sql.startswith("INSERT"):
            observed = self.nonces.get(params["nonce"])
            if observed is not None and observed >= params["cutoff"]:
                return FakeResult()
            self.nonces[params["nonce"]] = params["observed_at"]
            return FakeResult([{"nonce": params["nonce"]}], rowcount=1)
        if sql.startswith("DELETE"):
            expired = [nonce for nonce, observed in self.nonces.items() if observed < params["cutoff"]]
            for nonce in expired:
                del self.nonces[nonce]
            return FakeResult(rowcount=len(expired))
        raise AssertionError(f"unexpected signature_nonces SQL: {sql}")


class FakeSession:
    """Once a statement fails, later statements fail with 25P02 until ``rollback()``, as in Postgres."""

    def __init__(self, database: FakeDatabase):
        self.database = database
        self.commits = 0
        self.rollbacks = 0
        self.aborted = False

    async def execute(self, statement, params=None):
        await asyncio.sleep(0)
        sql = " ".join(str(statement).split())
        if self.aborted:
            raise InternalError(sql, params, SimpleNamespace(sqlstate="25P02"))
        try:
            return self.database.dispatch(sql, dict(params or {}))
        except DBAPIError:
            self.aborted = True
            raise

    async def commit(self):
        if self.aborted:
            raise InternalError("COMMIT", {}, SimpleNamespace(sqlstate="25P02"))
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1
        self.aborted = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeEmbeddingsClient:
    """Deterministic provider; ``failures`` are raised, in order, before any success."""

    def __init__(self, dimensions: int = 8, tokens_per_text: int = 7):
        self.dimensions = dimensions
        self.tokens_per_text = tokens_per_text
        self.failures: list[BaseException] = []
        self.calls: list[list[str]] = []

    async def embed_texts(self, texts: list[str], *, model: str) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        vectors = [[float(len(text) % 10)] + [0.5] * (self.dimensions - 1) for text in texts]
        return EmbeddingResponse(vectors=vectors, total_tokens=self.tokens_per_text * len(texts))


class FakeContentClient:
    def __init__(self):
        self.products: dict[str, ProductCard] = {}
        self.pages: dict[str, PageContent] = {}
        self.failures: list[BaseException] = []
        self.requests: list[tuple[str, str]] = []

    async def get_product(self, product_id: str) -> ProductCard:
        self.requests.append(("product", product_id))
        if self.failures:
            raise self.failures.pop(0)
        return self.products[product_id]

    async def get_page(self, page_id: str) -> PageContent:
        self.requests.append(("page", page_id))
        if self.failures:
            raise self.failures.pop(0)
        return self.pages[page_id]


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_db() -> FakeDatabase:
    database = FakeDatabase()
    database.add_site()
    return database


@pytest.fixture
def site(fake_db: FakeDatabase) -> SiteRecord:
    return SiteRecord(**fake_db.sites[SITE_ID])


@pytest.fixture
def fake_embeddings() -> FakeEmbeddingsClient:
    return FakeEmbeddingsClient()


@pytest.fixture
def fake_content() -> FakeContentClient:
    return FakeContentClient()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
