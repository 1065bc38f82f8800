import json

import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from storefront_ingest.api.dependencies import get_content_client_factory, get_embeddings_client, get_nonce_store
from storefront_ingest.db.session import get_db
from storefront_ingest.core.config import SignatureConfig
from storefront_ingest.main import app, build_nonce_store
from storefront_ingest.schemas.content import ProductCard
from storefront_ingest.services.retry_policy import UpstreamHTTPError
from storefront_ingest.services.signature import InMemoryNonceStore, sign_request

SITE_ID = "11111111-1111-1111-1111-111111111111"
SITE_SECRET = "test-shared-secret"
WEBHOOK_PATH = "/api/ingestion/webhook"

EVENT = {
    "event_id": "e1",
    "event": "product.updated",
    "entity_type": "product",
    "entity_id": "42",
    "occurred_at": "2024-01-01T00:00:00Z",
}


@pytest.fixture
def client(fake_db, fake_content, fake_embeddings):
    nonce_store = InMemoryNonceStore(ttl_seconds=600)

    async def override_db():
        yield fake_db.session()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_nonce_store] = lambda: nonce_store
    app.dependency_overrides[get_embeddings_client] = lambda: fake_embeddings
    app.dependency_overrides[get_content_client_factory] = lambda: (lambda site: fake_content)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _post(client, payload, *, nonce=None, secret=SITE_SECRET):
    body = json.dumps(payload).encode()
    headers = sign_request("POST", WEBHOOK_PATH, body, site_id=SITE_ID, secret=secret, nonce=nonce)
    headers["Content-Type"] = "application/json"
    return client.post(WEBHOOK_PATH, content=body, headers=headers)


def test_webhook_processes_product_into_three_chunks(client, fake_db, fake_content):
    fake_content.products["42"] = ProductCard(id=42, title="X", summary="s" * 2476)

    response = _post(client, EVENT)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processed"
    assert body["event_id"] == "e1"
    assert body["embeddings_created"] == 3
    rows = sorted(fake_db.entity_rows(SITE_ID, "product", "42"), key=lambda row: row["chunk_index"])
    assert [(row["start_char"], row["end_char"], row["version"]) for row in rows] == [
        (0, 1000, 1),
        (800, 1800, 1),
        (1600, 2500, 1),
    ]
    assert response.headers["X-Request-ID"]


def test_webhook_redelivery_is_duplicate(client, fake_db, fake_content):
    fake_content.products["42"] = ProductCard(id=42, title="Mug", summary="Ceramic.")
    _post(client, EVENT)

    response = _post(client, EVENT)

    assert response.status_code == 200
    assert response.json()["status"] == "duplicate"
    assert len(fake_db.entity_rows(SITE_ID, "product", "42")) == 1


def test_webhook_replayed_nonce_is_forbidden(client, fake_content):
    fake_content.products["42"] = ProductCard(id=42, title="Mug", summary="Ceramic.")
    _post(client, EVENT, nonce="fixed-nonce")

    response = _post(client, {**EVENT, "event_id": "e2"}, nonce="fixed-nonce")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "NONCE_REUSED"


def test_webhook_bad_signature_is_forbidden(client, fake_db):
    response = _post(client, EVENT, secret="not-the-secret")

    assert response.status_code == 403
    assert response.json() == {"error": {"code": "INVALID_SIGNATURE", "message": "Signature validation failed"}}
    assert fake_db.events == {}


def test_webhook_missing_headers_is_forbidden(client):
    response = client.post(WEBHOOK_PATH, content=json.dumps(EVENT).encode())
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "MISSING_REQUIRED_FIELD"


def test_webhook_missing_field_is_bad_request(client, fake_db):
    payload = {key: value for key, value in EVENT.items() if key != "entity_id"}

    response = _post(client, payload)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_REQUIRED_FIELD"
    assert fake_db.events == {}


def test_webhook_processing_failure_returns_error_envelope(client, fake_db, fake_content):
    fake_content.failures = [UpstreamHTTPError(404, "product not found", source="storefront")]

    response = _post(client, EVENT)

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "INGESTION_FAILED"
    assert error["details"] == {"event_id": "e1", "retryable": False}
    assert fake_db.event(SITE_ID, "e1")["status"] == "failed"


def test_status_endpoint_reports_counts(client, fake_content):
    fake_content.products["42"] = ProductCard(id=42, title="Mug", summary="Ceramic.")
    _post(client, EVENT)
    path = f"/api/ingestion/status?site_id={SITE_ID}"

    response = client.get(path, headers=sign_request("GET", path, b"", site_id=SITE_ID, secret=SITE_SECRET))

    assert response.status_code == 200
    body = response.json()
    assert body["site_id"] == SITE_ID
    assert body["embeddings_count"] == 1
    assert body["events_by_status"]["completed"] == 1
    assert body["events_by_status"]["failed"] == 0
    assert body["events_by_entity_type"]["product"] == 1
    assert [event["event_id"] for event in body["recent_events"]] == ["e1"]


def test_status_endpoint_rejects_other_site(client):
    other = "33333333-3333-3333-3333-333333333333"
    path = f"/api/ingestion/status?site_id={other}"

    response = client.get(path, headers=sign_request("GET", path, b"", site_id=SITE_ID, secret=SITE_SECRET))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "SITE_MISMATCH"


def test_health_ready_and_metrics(client):
    assert client.get("/health").json()["status"] == "ok"
    ready = client.get("/ready").json()
    assert ready["status"] == "ok"
    assert ready["checks"]["db"]["ok"] is True
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "ingestion_events_total" in metrics.text


def test_request_id_header_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-from-caller"})

    assert response.headers["X-Request-ID"] == "req-from-caller"


def test_status_endpoint_without_site_id_uses_error_envelope(client):
    path = "/api/ingestion/status"

    response = client.get(path, headers=sign_request("GET", path, b"", site_id=SITE_ID, secret=SITE_SECRET))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_REQUIRED_FIELD"
    assert "site_id" in response.json()["error"]["message"]


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/ingestion/nope")

    assert response.status_code == 404
    assert response.json() == {"error": {"code": "HTTP_404", "message": "Not Found"}}


def test_nonce_store_takes_ttl_from_signature_config():
    store = build_nonce_store(SignatureConfig(nonce_ttl_seconds=900))

    assert isinstance(store, InMemoryNonceStore)
    assert store.ttl_seconds == 900
