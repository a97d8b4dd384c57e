from datetime import timedelta

import pytest

from bookshelf.domain.errors import ImportAborted, StoreError, ValidationError
from bookshelf.domain.models import Book, EntityKind, WishlistItem, to_millis
from bookshelf.infrastructure import MemoryDocumentStore
from bookshelf.services.event_bus import Events
from bookshelf.services.genre_service import GENRE_COLORS

from conftest import OTHER_USER, START, USER, add_book, make_library


class BooksBatchFailingStore(MemoryDocumentStore):
    """Accepts single writes but fails every batch touching books."""

    def _apply_writes(self, writes):
        if any(w.kind == EntityKind.BOOKS for w in writes):
            raise StoreError("backend unavailable")
        super()._apply_writes(writes)


class WishlistDeleteFailingStore(MemoryDocumentStore):

    async def delete(self, user_id, kind, doc_id):
        if kind == EntityKind.WISHLIST:
            raise StoreError("permission denied")
        await super().delete(user_id, kind, doc_id)


def _backup(**sections):
    return dict({"version": 2, "exportedAt": START.isoformat()}, **sections)


async def _populate(library):
    genre = await library.genres.create_genre(USER, "Fantasy", "#ef4444")
    series = await library.series.create_series(USER, "Earthsea", total_books=6)
    await library.series.add_expected_book(USER, series.id, "Tehanu", position=4)
    await add_book(library, "A Wizard of Earthsea", "Le Guin", genres=[genre.id],
                   series_id=series.id, series_position=1)
    binned = await add_book(library, "The Farthest Shore", "Le Guin", genres=[genre.id], series_id=series.id)
    await library.bin.soft_delete(USER, binned.id)
    await library.wishlist.add(USER, WishlistItem(title="Emma", author="Austen"))


@pytest.mark.asyncio
async def test_export_then_import_into_empty_library(library):
    await _populate(library)
    document = await library.export_backup(USER)

    summary = await library.import_backup(OTHER_USER, document)

    assert (summary.genres.imported, summary.series.imported, summary.books.imported,
            summary.wishlist.imported, summary.bin.imported) == (1, 1, 1, 1, 1)
    assert summary.completed and summary.failures == []

    genres = await library.genres.get_genres(OTHER_USER)
    series = await library.series.get_all_series(OTHER_USER)
    books = await library.books.get_books(OTHER_USER)
    assert [g.color for g in genres] == ["#ef4444"]
    assert books[0].genres == [genres[0].id]
    assert books[0].series_id == series[0].id
    assert genres[0].book_count == 1
    assert series[0].book_count == 1
    assert series[0].total_books == 6
    assert [b.title for b in series[0].expected_books] == ["Tehanu"]

    binned = await library.bin.get_binned_books(OTHER_USER)
    assert binned[0].series_id == series[0].id
    assert binned[0].deleted_at == START


@pytest.mark.asyncio
async def test_reimport_skips_everything(library):
    await _populate(library)
    document = await library.export_backup(USER)

    summary = await library.import_backup(USER, document)

    assert summary.total_imported == 0
    assert (summary.genres.skipped, summary.series.skipped, summary.books.skipped,
            summary.wishlist.skipped, summary.bin.skipped) == (1, 1, 1, 1, 1)
    assert "No new items to import (all duplicates or already owned)" in summary.lines()
    assert "1 duplicate book skipped" in summary.lines()
    assert "1 existing series skipped" in summary.lines()


@pytest.mark.asyncio
async def test_isbn_match_skips_book_with_different_title(library):
    await add_book(library, "Dune", "Frank Herbert", isbn="9780441172719")

    summary = await library.import_backup(USER, _backup(books=[
        {"title": "Dune (40th Anniversary)", "author": "Herbert", "isbn": "978-0-441-17271-9"},
    ]))

    assert summary.books.skipped == 1
    assert summary.books.imported == 0


@pytest.mark.asyncio
async def test_duplicates_within_backup_are_imported_once(library):
    summary = await library.import_backup(USER, _backup(books=[
        {"title": "Dune", "author": "Frank Herbert"},
        {"title": "DUNE", "author": "frank  herbert"},
        {"title": "Emma", "author": "Austen"},
    ]))

    assert summary.books.imported == 2
    assert summary.books.skipped == 1
    assert "2 books added to library" in summary.lines()


@pytest.mark.asyncio
async def test_wishlist_owned_items_skipped_and_stale_items_removed(library):
    await library.wishlist.add(USER, WishlistItem(title="Emma", author="Jane Austen"))

    summary = await library.import_backup(USER, _backup(
        books=[{"title": "Dune", "author": "Herbert"}, {"title": "Emma", "author": "Jane Austen"}],
        wishlist=[{"title": "Dune", "author": "Herbert"}, {"title": "Ulysses", "author": "Joyce"}],
    ))

    assert summary.wishlist.skipped_owned == 1
    assert summary.wishlist.imported == 1
    assert summary.wishlist.auto_removed == 1
    assert [i.title for i in await library.wishlist.get_all(USER)] == ["Ulysses"]
    assert "1 wishlist item skipped (already owned)" in summary.lines()
    assert "1 wishlist item auto-removed (now owned)" in summary.lines()


@pytest.mark.asyncio
async def test_bin_entries_keep_their_purge_clock(library):
    old = START - timedelta(days=10)
    summary = await library.import_backup(USER, _backup(bin=[
        {"title": "Dune", "deletedAt": to_millis(old)},
        {"title": "Emma"},
    ]))

    assert summary.bin.imported == 2
    deleted = {b.title: b.deleted_at for b in await library.bin.get_binned_books(USER)}
    assert deleted == {"Dune": old, "Emma": START}
    assert await library.books.get_books(USER) == []


@pytest.mark.asyncio
async def test_bin_entry_matching_imported_book_is_skipped(library):
    summary = await library.import_backup(USER, _backup(
        books=[{"title": "Dune", "author": "Herbert"}],
        bin=[{"title": "dune", "author": "herbert", "deletedAt": to_millis(START)}],
    ))

    assert summary.books.imported == 1
    assert summary.bin.skipped == 1


@pytest.mark.asyncio
async def test_existing_genre_reused_and_colour_clash_reassigned(library):
    horror = await library.genres.create_genre(USER, "Horror", "#ef4444")

    summary = await library.import_backup(USER, _backup(
        genres=[
            {"name": "HORROR", "color": "#22c55e", "_exportId": "old-horror"},
            {"name": "Fantasy", "color": "#ef4444", "_exportId": "old-fantasy"},
        ],
        books=[{"title": "It", "author": "King", "genres": ["old-horror", "old-fantasy", "old-missing"]}],
    ))

    assert summary.genres.imported == 1
    assert summary.genres.skipped == 1
    genres = {g.name: g for g in await library.genres.get_genres(USER)}
    assert genres["Fantasy"].color != "#ef4444"
    book = (await library.books.get_books(USER))[0]
    assert sorted(book.genres) == sorted([horror.id, genres["Fantasy"].id])
    assert genres["Horror"].book_count == 1


@pytest.mark.asyncio
async def test_deleted_series_recreated_soft_deleted(library):
    summary = await library.import_backup(USER, _backup(
        series=[{"name": "Earthsea", "deletedAt": START.isoformat(), "_exportId": "s-old"}],
        bin=[{"title": "Tehanu", "seriesId": "s-old", "seriesPosition": 4, "deletedAt": to_millis(START)}],
    ))

    assert summary.series.imported == 1
    assert await library.series.get_all_series(USER) == []
    binned = (await library.bin.get_binned_books(USER))[0]
    series = await library.series.get_series_by_id(USER, binned.series_id)
    assert series.is_deleted
    assert series.deleted_at == START


@pytest.mark.asyncio
async def test_unknown_series_reference_dropped(library):
    await library.import_backup(USER, _backup(books=[
        {"title": "Dune", "seriesId": "gone", "seriesPosition": 1},
    ]))
    book = (await library.books.get_books(USER))[0]
    assert book.series_id is None
    assert book.series_position is None


@pytest.mark.asyncio
async def test_books_written_in_chunks_with_progress(store, clock):
    library = make_library(store, clock, import_chunk_size=2)
    progress = []

    await library.import_backup(USER, _backup(books=[{"title": f"Book {i}"} for i in range(5)]),
                                progress=lambda phase, done, total: progress.append((phase, done, total)))

    assert [p for p in progress if p[0] == "books"] == [("books", 2, 5), ("books", 4, 5), ("books", 5, 5)]


@pytest.mark.asyncio
async def test_validation_happens_before_any_write(library, store):
    with pytest.raises(ValidationError, match="Invalid entry 2 in 'books'"):
        await library.import_backup(USER, _backup(
            genres=[{"name": "Fantasy"}],
            books=[{"title": "Dune"}, {"title": "Emma", "rating": "five"}],
        ))
    assert await store.get_all(USER, EntityKind.GENRES) == []

    with pytest.raises(ValidationError, match="Backup file is empty"):
        await library.import_backup(USER, _backup())


@pytest.mark.asyncio
async def test_store_failure_aborts_with_partial_summary(clock):
    store = BooksBatchFailingStore(clock=clock)
    library = make_library(store, clock)
    completed = []
    library.event_bus.on(Events.IMPORT_COMPLETED, completed.append)

    with pytest.raises(ImportAborted) as excinfo:
        await library.import_backup(USER, _backup(
            genres=[{"name": "Fantasy", "_exportId": "g"}],
            books=[{"title": "Dune", "genres": ["g"]}],
        ))

    error = excinfo.value
    assert error.phase == "books"
    assert isinstance(error.__cause__, StoreError)
    assert error.summary.genres.imported == 1
    assert error.summary.books.imported == 0
    assert "Import stopped during the books step; earlier steps were saved" in error.summary.lines()
    assert len(await store.get_all(USER, EntityKind.GENRES)) == 1
    assert len(completed) == 1


@pytest.mark.asyncio
async def test_cleanup_failure_recorded_not_raised(clock):
    store = WishlistDeleteFailingStore(clock=clock)
    library = make_library(store, clock)
    item = await library.wishlist.add(USER, WishlistItem(title="Emma", author="Austen"))

    summary = await library.import_backup(USER, _backup(books=[{"title": "Emma", "author": "Austen"}]))

    assert summary.books.imported == 1
    assert summary.wishlist.auto_removed == 0
    assert [(f.phase, f.entity_id) for f in summary.failures] == [("cleanup", item.id)]
    assert f"Warning: cleanup ({item.id}): permission denied" in summary.lines()


@pytest.mark.asyncio
async def test_off_palette_colour_auto_assigned(library):
    await library.import_backup(USER, _backup(genres=[{"name": "Mystery", "color": "#010203"}]))

    genre = (await library.genres.get_genres(USER))[0]
    assert genre.color in GENRE_COLORS


@pytest.mark.asyncio
async def test_series_only_import_recounts_genres_too(library, store):
    genre = await library.genres.create_genre(USER, "Fantasy")
    await add_book(library, "Dune", genres=[genre.id])
    await store.update(USER, EntityKind.GENRES, genre.id, {"bookCount": 7})

    summary = await library.import_backup(USER, _backup(series=[{"name": "Earthsea"}]))

    assert summary.series.imported == 1
    assert summary.genre_recount.to_dict() == {"updated": 1, "totalBooks": 1}
    assert (await library.genres.get_genre(USER, genre.id)).book_count == 1


@pytest.mark.asyncio
async def test_genre_only_import_recounts_series_too(library, store):
    series = await library.series.create_series(USER, "Dune")
    await add_book(library, "Dune", series_id=series.id)
    await store.update(USER, EntityKind.SERIES, series.id, {"bookCount": 0})

    summary = await library.import_backup(USER, _backup(genres=[{"name": "Fantasy"}]))

    assert summary.genres.imported == 1
    assert summary.series_recount.to_dict() == {"updated": 1, "totalBooks": 1}
    assert (await library.series.get_series_by_id(USER, series.id)).book_count == 1


@pytest.mark.asyncio
async def test_nothing_imported_skips_recount(library):
    await library.genres.create_genre(USER, "Fantasy")

    summary = await library.import_backup(USER, _backup(genres=[{"name": "fantasy"}]))

    assert summary.genre_recount is None
    assert summary.series_recount is None


@pytest.mark.asyncio
async def test_overlong_genre_name_rejected_before_any_write(library, store):
    with pytest.raises(ValidationError, match="Invalid entry 2 in 'genres'"):
        await library.import_backup(USER, _backup(genres=[{"name": "Fantasy"}, {"name": "x" * 51}]))
    assert await store.get_all(USER, EntityKind.GENRES) == []
