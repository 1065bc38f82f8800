from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from storefront_ingest.core.logging import log_event

STALE_PROCESSING_MESSAGE = "stale processing reclaimed"


@dataclass
class ReconciliationReport:
    scanned: int = 0
    reclaimed: int = 0
    event_ids: list[str] = field(default_factory=list)


async def reconcile_stale_events(
    ledger: Any,
    *,
    older_than_minutes: int,
    now: datetime | None = None,
) -> ReconciliationReport:
    """Move events stuck in ``processing`` to ``retryable`` so a redelivery can reclaim them."""
    if older_than_minutes < 1:
        raise ValueError("older_than_minutes must be >= 1")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=older_than_minutes)
    report = ReconciliationReport()
    for event in await ledger.list_stale_processing(cutoff):
        report.scanned += 1
        reclaimed = await ledger.mark_stale_retryable(
            site_id=event.site_id,
            event_id=event.event_id,
            older_than=cutoff,
            error_message=STALE_PROCESSING_MESSAGE,
        )
        if reclaimed:
            report.reclaimed += 1
            report.event_ids.append(event.event_id)
            log_event(
                "reconcile.event_reclaimed",
                level=logging.WARNING,
                payload={"event_id": event.event_id, "attempts": event.attempts},
                site_id=event.site_id,
                plane="control",
            )
    log_event(
        "reconcile.completed",
        payload={"scanned": report.scanned, "reclaimed": report.reclaimed, "cutoff": cutoff.isoformat()},
        plane="control",
    )
    return report
