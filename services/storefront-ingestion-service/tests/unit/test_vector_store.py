import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from storefront_ingest.db.errors import DatabaseOperationError
from storefront_ingest.db.repositories.embeddings import EmbeddingRow, VectorStoreWriter, _to_vector_literal
from storefront_ingest.services.dedup import content_hash

SITE_ID = "11111111-1111-1111-1111-111111111111"
TENANT_ID = "22222222-2222-2222-2222-222222222222"


def _rows(*texts: str) -> list[EmbeddingRow]:
    return [
        EmbeddingRow(
            chunk_index=index,
            content_text=value,
            embedding=[0.25, 0.5],
            chunk_hash=content_hash(value),
            start_char=index * 10,
            end_char=index * 10 + len(value),
            token_count=3,
            metadata={"entity_title": "Trail Shoe"},
        )
        for index, value in enumerate(texts)
    ]


def _write(writer, rows, full_hash="full-1", entity_id="42"):
    return writer.insert_version(
        site_id=SITE_ID,
        tenant_id=TENANT_ID,
        entity_type="product",
        entity_id=entity_id,
        model="text-embedding-3-small",
        full_content_hash=full_hash,
        rows=rows,
    )


def test_vector_literal_format():
    assert _to_vector_literal([1, 0.5]) == "[1.00000000,0.50000000]"


def test_insert_version_numbers_versions_per_entity(fake_db):
    writer = VectorStoreWriter(fake_db.session())

    first = asyncio.run(_write(writer, _rows("alpha", "beta")))
    second = asyncio.run(_write(writer, _rows("gamma"), full_hash="full-2"))
    other = asyncio.run(_write(writer, _rows("alpha"), entity_id="43"))

    assert (first.version, first.inserted) == (1, 2)
    assert (second.version, second.inserted) == (2, 1)
    assert other.version == 1
    stored = fake_db.entity_rows(SITE_ID, "product", "42")
    assert sorted(row["version"] for row in stored) == [1, 1, 2]
    assert stored[0]["metadata"] == {"entity_title": "Trail Shoe"}
    assert stored[0]["model"] == "text-embedding-3-small"


def test_insert_version_takes_entity_lock(fake_db):
    asyncio.run(_write(VectorStoreWriter(fake_db.session()), _rows("alpha")))
    assert fake_db.advisory_locks == [f"embeddings:{SITE_ID}:product:42"]


def test_insert_version_skips_conflicting_chunk_hash(fake_db):
    writer = VectorStoreWriter(fake_db.session())
    asyncio.run(_write(writer, _rows("alpha")))

    result = asyncio.run(_write(writer, _rows("alpha", "beta"), full_hash="full-2"))

    assert (result.inserted, result.skipped_conflicts) == (1, 1)
    assert len(fake_db.entity_rows(SITE_ID, "product", "42")) == 2


def test_insert_version_requires_rows(fake_db):
    with pytest.raises(ValueError):
        asyncio.run(_write(VectorStoreWriter(fake_db.session()), []))


def test_hash_lookups(fake_db):
    writer = VectorStoreWriter(fake_db.session())
    asyncio.run(_write(writer, _rows("alpha", "beta")))

    assert asyncio.run(
        writer.has_full_content_hash(site_id=SITE_ID, entity_type="product", entity_id="42", full_content_hash="full-1")
    )
    assert not asyncio.run(
        writer.has_full_content_hash(site_id=SITE_ID, entity_type="product", entity_id="42", full_content_hash="other")
    )
    assert asyncio.run(writer.list_chunk_hashes(site_id=SITE_ID, entity_type="product", entity_id="42")) == {
        content_hash("alpha"),
        content_hash("beta"),
    }


def test_delete_entity_removes_all_versions(fake_db):
    writer = VectorStoreWriter(fake_db.session())
    asyncio.run(_write(writer, _rows("alpha")))
    asyncio.run(_write(writer, _rows("beta"), full_hash="full-2"))
    asyncio.run(_write(writer, _rows("alpha"), entity_id="43"))

    deleted = asyncio.run(writer.delete_entity(site_id=SITE_ID, entity_type="product", entity_id="42"))

    assert deleted == 2
    assert asyncio.run(writer.count_for_site(SITE_ID)) == 1


def test_failed_insert_rolls_back_and_maps_error(fake_db):
    session = fake_db.session()
    writer = VectorStoreWriter(session)
    fake_db.fail_next("INSERT INTO embeddings", OperationalError("INSERT", {}, SimpleNamespace(sqlstate="40P01")))

    with pytest.raises(DatabaseOperationError) as exc:
        asyncio.run(_write(writer, _rows("alpha", "beta")))

    assert exc.value.error_code == "deadlock_detected"
    assert exc.value.retryable is True
    assert session.rollbacks == 1
    assert session.aborted is False
    assert asyncio.run(writer.count_for_site(SITE_ID)) == 0
