import pytest

from bookshelf.domain.errors import NotFoundError, StoreError, ValidationError
from bookshelf.domain.models import EntityKind, ExpectedBookSource

from conftest import USER, BatchFailingStore, add_book, book_doc, make_library


@pytest.mark.asyncio
async def test_create_series_normalizes_total(library):
    series = await library.series.create_series(USER, "  The Expanse ", "Space opera", 0)
    assert series.name == "The Expanse"
    assert series.total_books is None
    assert series.book_count == 0


@pytest.mark.asyncio
async def test_series_names_unique_among_active_series(library):
    original = await library.series.create_series(USER, "Dune")
    with pytest.raises(ValidationError, match='Series "Dune" already exists'):
        await library.series.create_series(USER, "DUNE")

    await library.series.soft_delete_series(USER, original.id)
    replacement = await library.series.create_series(USER, "Dune")
    assert replacement.id != original.id

    with pytest.raises(ValidationError):
        await library.series.restore_series(USER, original.id)


@pytest.mark.asyncio
async def test_soft_deleted_series_hidden_but_reachable_by_id(library):
    series = await library.series.create_series(USER, "Dune")
    await library.series.soft_delete_series(USER, series.id)

    assert await library.series.get_all_series(USER) == []
    with pytest.raises(NotFoundError):
        await library.series.get_series(USER, series.id)
    deleted = await library.series.get_series_by_id(USER, series.id)
    assert deleted.deleted_at == library.clock()

    restored = await library.series.restore_series(USER, series.id)
    assert not restored.is_deleted
    assert [s.id for s in await library.series.get_all_series(USER)] == [series.id]


@pytest.mark.asyncio
async def test_update_series_leaves_total_unchanged_by_default(library):
    series = await library.series.create_series(USER, "Dune", total_books=6)
    updated = await library.series.update_series(USER, series.id, description="Arrakis")
    assert updated.total_books == 6
    cleared = await library.series.update_series(USER, series.id, total_books=None)
    assert cleared.total_books is None


@pytest.mark.asyncio
async def test_expected_books_deduplicated_and_sorted(library):
    series = await library.series.create_series(USER, "Dune")
    await library.series.add_expected_book(USER, series.id, "Children of Dune", position=3)
    updated = await library.series.add_expected_book(USER, series.id, "Dune Messiah", "978-0-441-17269-9",
                                                     position=2, source=ExpectedBookSource.API)
    assert [b.title for b in updated.expected_books] == ["Dune Messiah", "Children of Dune"]
    assert updated.expected_books[0].isbn == "9780441172699"

    with pytest.raises(ValidationError, match="already exists in expected books"):
        await library.series.add_expected_book(USER, series.id, "children of dune")
    with pytest.raises(ValidationError, match="already exists in expected books"):
        await library.series.add_expected_book(USER, series.id, "Other title", "9780441172699")

    trimmed = await library.series.remove_expected_book(USER, series.id, 0)
    assert [b.title for b in trimmed.expected_books] == ["Children of Dune"]
    with pytest.raises(ValidationError, match="Invalid book index"):
        await library.series.remove_expected_book(USER, series.id, 5)


@pytest.mark.asyncio
async def test_delete_series_unlinks_active_books(library, store):
    series = await library.series.create_series(USER, "Dune")
    book = await add_book(library, "Dune", series_id=series.id, series_position=1)

    assert (await library.series.get_series(USER, series.id)).book_count == 1
    assert await library.series.delete_series(USER, series.id) == 1

    doc = await book_doc(store, book.id)
    assert doc["seriesId"] is None
    assert doc["seriesPosition"] is None
    assert await store.get_by_id(USER, EntityKind.SERIES, series.id) is None


@pytest.mark.asyncio
async def test_find_potential_duplicates(library):
    await library.series.create_series(USER, "Harry Potter")
    await library.series.create_series(USER, "Harry Potter Series")
    await library.series.create_series(USER, "Discworld")

    groups = await library.series.find_potential_duplicates(USER)

    assert [sorted(s.name for s in group) for group in groups] == [["Harry Potter", "Harry Potter Series"]]


@pytest.mark.asyncio
async def test_recalculate_counts_include_soft_deleted_series(library, store):
    series = await library.series.create_series(USER, "Dune")
    await add_book(library, "Dune", series_id=series.id)
    await store.update(USER, EntityKind.SERIES, series.id, {"bookCount": 9, "deletedAt": "2024-01-01T00:00:00+00:00"})

    result = await library.series.recalculate_book_counts(USER)

    assert result.updated == 1
    assert (await library.series.get_series_by_id(USER, series.id)).book_count == 1


@pytest.mark.asyncio
async def test_failed_delete_leaves_series_books_and_cache(clock):
    store = BatchFailingStore(clock=clock)
    library = make_library(store, clock)
    series = await library.series.create_series(USER, "Dune")
    book = await add_book(library, "Dune Messiah", series_id=series.id, series_position=2)
    await library.series.get_all_series(USER)
    store.failing = True

    with pytest.raises(StoreError):
        await library.series.delete_series(USER, series.id)

    assert (await store.get_by_id(USER, EntityKind.SERIES, series.id))["name"] == "Dune"
    doc = await book_doc(store, book.id)
    assert (doc["seriesId"], doc["seriesPosition"]) == (series.id, 2)
    assert library.cache.series.is_valid(USER)
