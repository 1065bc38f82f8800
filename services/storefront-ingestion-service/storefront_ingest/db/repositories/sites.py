from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text


@dataclass(frozen=True)
class SiteRecord:
    site_id: str
    tenant_id: str
    site_url: str
    rest_base_url: str | None
    secret: str
    status: str

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class SiteRepository:
    def __init__(self, db: Any):
        self.db = db

    async def get_site(self, site_id: str) -> SiteRecord | None:
        try:
            normalized = str(uuid.UUID(str(site_id)))
        except ValueError:
            return None
        result = await self.db.execute(
            text(
                """
                SELECT id::text AS site_id, tenant_id::text AS tenant_id, site_url, rest_base_url, secret, status
                FROM sites
                WHERE id = CAST(:site_id AS uuid)
                """
            ),
            {"site_id": normalized},
        )
        row = result.mappings().first()
        if not row:
            return None
        return SiteRecord(
            site_id=str(row["site_id"]),
            tenant_id=str(row["tenant_id"]),
            site_url=str(row["site_url"]),
            rest_base_url=row.get("rest_base_url"),
            secret=str(row["secret"]),
            status=str(row["status"]),
        )
