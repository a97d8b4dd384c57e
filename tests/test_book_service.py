import pytest

from bookshelf.domain.errors import NotFoundError, ValidationError
from bookshelf.domain.models import Book
from bookshelf.services.event_bus import Events

from conftest import USER, add_book


@pytest.mark.asyncio
async def test_create_book_bumps_counters_and_emits(library):
    genre = await library.genres.create_genre(USER, "Fantasy")
    series = await library.series.create_series(USER, "Earthsea")
    saved = []
    library.event_bus.on(Events.BOOK_SAVED, saved.append)

    book = await add_book(library, "A Wizard of Earthsea", "Le Guin", genres=[genre.id],
                          series_id=series.id, series_position=1)

    assert book.id
    assert book.created_at == library.clock()
    assert (await library.genres.get_genre(USER, genre.id)).book_count == 1
    assert (await library.series.get_series(USER, series.id)).book_count == 1
    assert saved == [{"user_id": USER, "book_id": book.id}]
    assert [b.title for b in await library.books.get_books(USER)] == ["A Wizard of Earthsea"]


@pytest.mark.asyncio
async def test_create_book_validates_before_writing(library, store):
    with pytest.raises(ValidationError):
        await library.books.create_book(USER, Book(title="", author="Nobody"))
    assert await library.books.get_books(USER) == []


@pytest.mark.asyncio
async def test_update_book_moves_counters(library):
    fantasy = await library.genres.create_genre(USER, "Fantasy")
    horror = await library.genres.create_genre(USER, "Horror")
    first = await library.series.create_series(USER, "First")
    second = await library.series.create_series(USER, "Second")
    book = await add_book(library, "Dune", genres=[fantasy.id], series_id=first.id)

    updated = await library.books.update_book(USER, book.id, {"genres": [horror.id], "seriesId": second.id})

    assert updated.genres == [horror.id]
    counts = {g.id: g.book_count for g in await library.genres.get_genres(USER)}
    assert counts == {fantasy.id: 0, horror.id: 1}
    assert (await library.series.get_series(USER, first.id)).book_count == 0
    assert (await library.series.get_series(USER, second.id)).book_count == 1


@pytest.mark.asyncio
async def test_update_book_rejects_protected_and_invalid_fields(library):
    book = await add_book(library, "Dune")
    with pytest.raises(ValidationError, match="deletedAt"):
        await library.books.update_book(USER, book.id, {"deletedAt": 1})
    with pytest.raises(ValidationError, match="Rating"):
        await library.books.update_book(USER, book.id, {"rating": 9})
    with pytest.raises(NotFoundError):
        await library.books.update_book(USER, "missing", {"title": "X"})


@pytest.mark.asyncio
async def test_update_binned_book_does_not_count(library):
    genre = await library.genres.create_genre(USER, "Fantasy")
    book = await add_book(library, "Dune")
    await library.bin.soft_delete(USER, book.id)

    await library.books.update_book(USER, book.id, {"genres": [genre.id]})

    assert (await library.genres.get_genre(USER, genre.id)).book_count == 0


@pytest.mark.asyncio
async def test_check_for_duplicate_by_isbn_then_title_author(library):
    await add_book(library, "Dune", "Frank Herbert", isbn="9780441172719")

    by_isbn = await library.books.check_for_duplicate(USER, "978-0-441-17271-9", "Other", "Someone")
    assert by_isbn.is_duplicate and by_isbn.match_type == 'isbn'

    by_title = await library.books.check_for_duplicate(USER, None, "  DUNE ", "frank herbert")
    assert by_title.is_duplicate and by_title.match_type == 'title-author'
    assert by_title.existing_book.title == "Dune"

    assert not (await library.books.check_for_duplicate(USER, None, "Dune", "Someone Else")).is_duplicate
