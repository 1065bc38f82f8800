from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from storefront_ingest.core.logging import log_event
from storefront_ingest.db.errors import commit_or_raise, is_unique_violation, map_db_error

TERMINAL_STATUSES = frozenset({"completed", "failed", "retryable"})
RECENT_EVENTS_LIMIT = 20

_EVENT_COLUMNS = """
    site_id::text AS site_id, event_id, event_type, entity_type, entity_id, occurred_at,
    status, attempts, error_message, metadata, created_at, updated_at, processed_at
"""


@dataclass(frozen=True)
class IngestionEventRecord:
    site_id: str
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    occurred_at: datetime | None
    status: str
    attempts: int
    error_message: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "IngestionEventRecord":
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            site_id=str(row["site_id"]),
            event_id=str(row["event_id"]),
            event_type=str(row["event_type"]),
            entity_type=str(row["entity_type"]),
            entity_id=str(row["entity_id"]),
            occurred_at=row.get("occurred_at"),
            status=str(row["status"]),
            attempts=int(row.get("attempts") or 1),
            error_message=row.get("error_message"),
            metadata=dict(metadata),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            processed_at=row.get("processed_at"),
        )


@dataclass(frozen=True)
class LedgerClaim:
    """Result of trying to start processing an event.

    ``outcome`` is ``inserted`` for a first delivery, ``reclaimed`` when a redelivery
    took over an event previously left ``retryable`` and ``duplicate`` otherwise.
    """

    outcome: str
    prior_status: str | None
    attempts: int

    @property
    def claimed(self) -> bool:
        return self.outcome in {"inserted", "reclaimed"}


@dataclass(frozen=True)
class EventStatusSummary:
    by_status: dict[str, int]
    by_entity_type: dict[str, int]
    recent_events: list[IngestionEventRecord]


class EventLedger:
    """Durable record of webhook events keyed by ``(site_id, event_id)``."""

    def __init__(self, db: Any):
        self.db = db

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get_event(self, site_id: str, event_id: str) -> IngestionEventRecord | None:
        result = await self.db.execute(
            text(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM ingestion_events
                WHERE site_id = CAST(:site_id AS uuid) AND event_id = :event_id
                """
            ),
            {"site_id": site_id, "event_id": event_id},
        )
        row = result.mappings().first()
        if not row:
            return None
        return IngestionEventRecord.from_row(row)

    async def try_begin_processing(
        self,
        *,
        site_id: str,
        event_id: str,
        event_type: str,
        entity_type: str,
        entity_id: str,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerClaim:
        existing = await self.get_event(site_id, event_id)
        if existing is not None:
            if existing.status == "retryable":
                return await self._reclaim(site_id=site_id, event_id=event_id, occurred_at=occurred_at)
            return LedgerClaim(outcome="duplicate", prior_status=existing.status, attempts=existing.attempts)

        try:
            await self.db.execute(
                text(
                    """
                    INSERT INTO ingestion_events (
                        site_id, event_id, event_type, entity_type, entity_id, occurred_at,
                        status, attempts, metadata, created_at, updated_at
                    ) VALUES (
                        CAST(:site_id AS uuid), :event_id, :event_type, :entity_type, :entity_id, :occurred_at,
                        'processing', 1, CAST(:metadata AS jsonb), now(), now()
                    )
                    """
                ),
                {
                    "site_id": site_id,
                    "event_id": event_id,
                    "event_type": event_type,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "occurred_at": occurred_at,
                    "metadata": json.dumps(metadata or {}),
                },
            )
            await self.db.commit()
        except DBAPIError as exc:
            await self.db.rollback()
            if not is_unique_violation(exc):
                raise map_db_error(exc) from exc
            winner = await self.get_event(site_id, event_id)
            log_event(
                "ledger.insert_conflict",
                payload={"event_id": event_id, "prior_status": winner.status if winner else None},
                site_id=site_id,
            )
            return LedgerClaim(
                outcome="duplicate",
                prior_status=winner.status if winner else None,
                attempts=winner.attempts if winner else 1,
            )
        return LedgerClaim(outcome="inserted", prior_status=None, attempts=1)

    async def _reclaim(self, *, site_id: str, event_id: str, occurred_at: datetime) -> LedgerClaim:
        result = await self.db.execute(
            text(
                """
                UPDATE ingestion_events
                SET status = 'processing',
                    attempts = attempts + 1,
                    error_message = NULL,
                    occurred_at = :occurred_at,
                    processed_at = NULL,
                    updated_at = now()
                WHERE site_id = CAST(:site_id AS uuid) AND event_id = :event_id AND status = 'retryable'
                RETURNING attempts
                """
            ),
            {"site_id": site_id, "event_id": event_id, "occurred_at": occurred_at},
        )
        row = result.mappings().first()
        await commit_or_raise(self.db)
        if not row:
            current = await self.get_event(site_id, event_id)
            return LedgerClaim(
                outcome="duplicate",
                prior_status=current.status if current else None,
                attempts=current.attempts if current else 1,
            )
        log_event("ledger.reclaimed", payload={"event_id": event_id, "attempts": int(row["attempts"])}, site_id=site_id)
        return LedgerClaim(outcome="reclaimed", prior_status="retryable", attempts=int(row["attempts"]))

    async def finish(
        self,
        *,
        site_id: str,
        event_id: str,
        status: str,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"unsupported terminal status: {status}")
        result = await self.db.execute(
            text(
                """
                UPDATE ingestion_events
                SET status = :status,
                    error_message = :error_message,
                    metadata = COALESCE(metadata, '{}'::jsonb) || CAST(:metadata AS jsonb),
                    processed_at = now(),
                    updated_at = now()
                WHERE site_id = CAST(:site_id AS uuid) AND event_id = :event_id AND status = 'processing'
                RETURNING status
                """
            ),
            {
                "site_id": site_id,
                "event_id": event_id,
                "status": status,
                "error_message": (error_message or "")[:1024] or None,
                "metadata": json.dumps(metadata or {}),
            },
        )
        row = result.mappings().first()
        await commit_or_raise(self.db)
        if row:
            return True
        current = await self.get_event(site_id, event_id)
        if current is not None and current.status == status:
            return True
        log_event(
            "ledger.finish_rejected",
            payload={
                "event_id": event_id,
                "requested_status": status,
                "current_status": current.status if current else None,
            },
            site_id=site_id,
        )
        return False

    async def status_summary(self, site_id: str, *, limit: int = RECENT_EVENTS_LIMIT) -> EventStatusSummary:
        counts = await self.db.execute(
            text(
                """
                SELECT status, entity_type, COUNT(*) AS total
                FROM ingestion_events
                WHERE site_id = CAST(:site_id AS uuid)
                GROUP BY status, entity_type
                """
            ),
            {"site_id": site_id},
        )
        by_status: dict[str, int] = {}
        by_entity_type: dict[str, int] = {}
        for row in counts.mappings().all():
            total = int(row["total"] or 0)
            by_status[str(row["status"])] = by_status.get(str(row["status"]), 0) + total
            by_entity_type[str(row["entity_type"])] = by_entity_type.get(str(row["entity_type"]), 0) + total

        recent = await self.db.execute(
            text(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM ingestion_events
                WHERE site_id = CAST(:site_id AS uuid)
                ORDER BY created_at DESC
                LIMIT :limit_n
                """
            ),
            {"site_id": site_id, "limit_n": limit},
        )
        events = [IngestionEventRecord.from_row(row) for row in recent.mappings().all()]
        return EventStatusSummary(by_status=by_status, by_entity_type=by_entity_type, recent_events=events)

    async def list_stale_processing(self, older_than: datetime) -> list[IngestionEventRecord]:
        result = await self.db.execute(
            text(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM ingestion_events
                WHERE status = 'processing' AND updated_at < :cutoff
                ORDER BY updated_at ASC
                """
            ),
            {"cutoff": older_than},
        )
        return [IngestionEventRecord.from_row(row) for row in result.mappings().all()]

    async def mark_stale_retryable(self, *, site_id: str, event_id: str, older_than: datetime, error_message: str) -> bool:
        result = await self.db.execute(
            text(
                """
                UPDATE ingestion_events
                SET status = 'retryable',
                    error_message = :error_message,
                    updated_at = now()
                WHERE site_id = CAST(:site_id AS uuid) AND event_id = :event_id
                  AND status = 'processing' AND updated_at < :cutoff
                RETURNING status
                """
            ),
            {"site_id": site_id, "event_id": event_id, "cutoff": older_than, "error_message": error_message},
        )
        row = result.mappings().first()
        await commit_or_raise(self.db)
        return row is not None
