import pytest

pytest.importorskip("kuzu")

from bookshelf.domain.errors import StoreError
from bookshelf.domain.models import EntityKind
from bookshelf.domain.repositories import SERVER_TIMESTAMP
from bookshelf.infrastructure.kuzu_store import KuzuDocumentStore

from conftest import START, USER


@pytest.fixture
def kuzu_store(tmp_path, clock):
    store = KuzuDocumentStore(str(tmp_path / "kuzu" / "bookshelf.db"), clock=clock)
    yield store
    store.disconnect()


@pytest.mark.asyncio
async def test_create_update_query_delete(kuzu_store):
    doc_id = await kuzu_store.create(USER, EntityKind.BOOKS, {
        "title": "Dune", "genres": ["g1"], "createdAt": SERVER_TIMESTAMP,
    })
    await kuzu_store.update(USER, EntityKind.BOOKS, doc_id, {"rating": 5})

    doc = await kuzu_store.get_by_id(USER, EntityKind.BOOKS, doc_id)
    assert doc == {"id": doc_id, "title": "Dune", "genres": ["g1"], "createdAt": START.isoformat(), "rating": 5}
    assert [d["id"] for d in await kuzu_store.query_by_field(USER, EntityKind.BOOKS, "genres", "g1")] == [doc_id]
    assert await kuzu_store.get_all("someone-else", EntityKind.BOOKS) == []

    await kuzu_store.delete(USER, EntityKind.BOOKS, doc_id)
    assert await kuzu_store.get_by_id(USER, EntityKind.BOOKS, doc_id) is None


@pytest.mark.asyncio
async def test_failed_batch_rolls_back(kuzu_store):
    batch = kuzu_store.batch()
    batch.stage_create(USER, EntityKind.GENRES, {"name": "Fantasy"})
    batch.stage_update(USER, EntityKind.GENRES, "missing", {"name": "X"})

    with pytest.raises(StoreError):
        await batch.commit()
    assert await kuzu_store.get_all(USER, EntityKind.GENRES) == []


@pytest.mark.asyncio
async def test_documents_persist_across_connections(tmp_path, clock):
    path = str(tmp_path / "kuzu" / "bookshelf.db")
    first = KuzuDocumentStore(path, clock=clock)
    doc_id = await first.create(USER, EntityKind.SERIES, {"name": "Dune"})
    first.disconnect()

    second = KuzuDocumentStore(path, clock=clock)
    try:
        assert (await second.get_by_id(USER, EntityKind.SERIES, doc_id))["name"] == "Dune"
    finally:
        second.disconnect()
