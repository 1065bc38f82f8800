from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache

from fastapi import Depends, Request

from storefront_ingest.clients.content_client import StorefrontContentClient
from storefront_ingest.clients.embeddings_client import EmbeddingsClient
from storefront_ingest.core.config import (
    chunking_config,
    content_retry_policy,
    embeddings_config,
    embeddings_retry_policy,
    get_settings,
    signature_config,
)
from storefront_ingest.db.repositories.embeddings import VectorStoreWriter
from storefront_ingest.db.repositories.ingestion_events import EventLedger
from storefront_ingest.db.repositories.sites import SiteRecord, SiteRepository
from storefront_ingest.db.session import get_db
from storefront_ingest.services.embedding_batcher import EmbeddingBatcher
from storefront_ingest.services.ingestion import IngestionPipeline
from storefront_ingest.services.orchestrator import WebhookOrchestrator
from storefront_ingest.services.signature import NonceStore, SignatureAuthenticator

ContentClientFactory = Callable[[SiteRecord], StorefrontContentClient]


def get_nonce_store(request: Request) -> NonceStore:
    return request.app.state.nonce_store


@lru_cache
def get_embeddings_client() -> EmbeddingsClient:
    return EmbeddingsClient(embeddings_config(get_settings()))


def get_content_client_factory() -> ContentClientFactory:
    cfg = get_settings()
    policy = content_retry_policy(cfg)

    def factory(site: SiteRecord) -> StorefrontContentClient:
        return StorefrontContentClient(
            site,
            api_prefix=cfg.CONTENT_API_PREFIX,
            timeout_seconds=cfg.CONTENT_REQUEST_TIMEOUT_SECONDS,
            retry_policy=policy,
        )

    return factory


def get_authenticator(db=Depends(get_db), nonce_store: NonceStore = Depends(get_nonce_store)) -> SignatureAuthenticator:
    return SignatureAuthenticator(
        site_lookup=SiteRepository(db).get_site,
        nonce_store=nonce_store,
        config=signature_config(get_settings()),
    )


def get_orchestrator(
    db=Depends(get_db),
    authenticator: SignatureAuthenticator = Depends(get_authenticator),
    embeddings_client: EmbeddingsClient = Depends(get_embeddings_client),
    content_client_factory: ContentClientFactory = Depends(get_content_client_factory),
) -> WebhookOrchestrator:
    cfg = get_settings()
    embeddings = embeddings_config(cfg)
    vector_store = VectorStoreWriter(db)
    batcher = EmbeddingBatcher(
        embeddings_client,
        batch_size=embeddings.batch_size,
        retry_policy=embeddings_retry_policy(cfg),
    )
    chunking = chunking_config(cfg)

    def pipeline_factory(site: SiteRecord) -> IngestionPipeline:
        return IngestionPipeline(
            site_id=site.site_id,
            tenant_id=site.tenant_id,
            content_client=content_client_factory(site),
            batcher=batcher,
            vector_store=vector_store,
            chunking=chunking,
            model=embeddings.model,
        )

    return WebhookOrchestrator(
        authenticator=authenticator,
        ledger=EventLedger(db),
        vector_store=vector_store,
        pipeline_factory=pipeline_factory,
    )
