from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from storefront_ingest.core.config import RetryPolicy
from storefront_ingest.db.repositories.sites import SiteRecord
from storefront_ingest.schemas.content import PageContent, ProductCard
from storefront_ingest.services.retry_policy import MalformedResponseError, UpstreamHTTPError, with_retry
from storefront_ingest.services.signature import sign_request

SOURCE = "storefront"


def resolve_rest_base(site: SiteRecord, api_prefix: str) -> str:
    if site.rest_base_url:
        return site.rest_base_url.rstrip("/")
    return f"{site.site_url.rstrip('/')}{api_prefix}"


class StorefrontContentClient:
    """Signed REST client for the storefront plugin's content endpoints."""

    def __init__(
        self,
        site: SiteRecord,
        *,
        api_prefix: str,
        timeout_seconds: float,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.site = site
        self.base_url = resolve_rest_base(site, api_prefix)
        self.timeout_seconds = float(timeout_seconds)
        self.retry_policy = retry_policy
        self.sleep = sleep

    async def _get_json(self, path: str) -> Any:
        headers = sign_request("GET", path, b"", site_id=self.site.site_id, secret=self.site.secret)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(f"{self.base_url}{path}", headers=headers)
        if response.status_code >= 400:
            raise UpstreamHTTPError(response.status_code, response.text[:512], source=SOURCE)
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"{path} returned non-JSON body", source=SOURCE) from exc

    async def _fetch(self, path: str, operation_name: str) -> Any:
        # Headers are re-signed per attempt so each retry carries a fresh nonce.
        return await with_retry(
            lambda: self._get_json(path),
            self.retry_policy,
            operation_name=operation_name,
            sleep=self.sleep,
        )

    async def get_product(self, product_id: str) -> ProductCard:
        body = await self._fetch(f"/product/{quote(str(product_id), safe='')}", "content.get_product")
        try:
            return ProductCard.model_validate(body)
        except ValidationError as exc:
            raise MalformedResponseError(f"invalid product payload for {product_id}", source=SOURCE) from exc

    async def get_page(self, page_id: str) -> PageContent:
        body = await self._fetch(f"/page/{quote(str(page_id), safe='')}", "content.get_page")
        try:
            return PageContent.model_validate(body)
        except ValidationError as exc:
            raise MalformedResponseError(f"invalid page payload for {page_id}", source=SOURCE) from exc
