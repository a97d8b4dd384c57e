import pytest

from bookshelf.domain.errors import NotFoundError, StoreError, ValidationError
from bookshelf.domain.models import EntityKind, Genre
from bookshelf.services.event_bus import Events
from bookshelf.services.genre_service import GENRE_COLORS, available_colors

from conftest import USER, BatchFailingStore, add_book, book_doc, make_library


@pytest.mark.asyncio
async def test_create_genre_assigns_unused_palette_colour(library):
    first = await library.genres.create_genre(USER, "Fantasy")
    second = await library.genres.create_genre(USER, "Horror")

    assert first.color in GENRE_COLORS
    assert second.color in GENRE_COLORS
    assert first.color != second.color
    assert first.book_count == 0
    assert first.created_at == library.clock()


@pytest.mark.asyncio
async def test_create_genre_rejects_normalized_duplicate(library):
    await library.genres.create_genre(USER, "Science Fiction")
    with pytest.raises(ValidationError, match='Genre "Science Fiction" already exists'):
        await library.genres.create_genre(USER, "  science   FICTION ")


@pytest.mark.asyncio
async def test_create_genre_rejects_taken_colour(library):
    await library.genres.create_genre(USER, "Fantasy", "#ef4444")
    with pytest.raises(ValidationError, match="already used"):
        await library.genres.create_genre(USER, "Horror", "#EF4444")
    with pytest.raises(ValidationError, match="palette"):
        await library.genres.create_genre(USER, "Horror", "red")


@pytest.mark.asyncio
async def test_create_genre_rejects_colour_outside_palette(library):
    for color in ("#123456", "#abc"):
        with pytest.raises(ValidationError, match="Please select a colour from the palette"):
            await library.genres.create_genre(USER, "Odd", color)
    genre = await library.genres.create_genre(USER, "Odd", "#EF4444")
    assert genre.color == "#EF4444"

    with pytest.raises(ValidationError, match="palette"):
        await library.genres.update_genre(USER, genre.id, color="#010203")


@pytest.mark.asyncio
async def test_genre_name_limited_to_fifty_characters(library):
    with pytest.raises(ValidationError, match="50 characters or less"):
        await library.genres.create_genre(USER, "x" * 51)
    genre = await library.genres.create_genre(USER, "x" * 50)
    with pytest.raises(ValidationError, match="50 characters or less"):
        await library.genres.update_genre(USER, genre.id, name="y" * 51)


@pytest.mark.asyncio
async def test_create_genre_emits_event(library):
    seen = []
    library.event_bus.on(Events.GENRE_CREATED, seen.append)
    genre = await library.genres.create_genre(USER, "Fantasy")
    assert seen == [{"user_id": USER, "genre_id": genre.id}]


def test_pick_colour_falls_back_to_full_palette(library):
    taken = [Genre(id=str(i), name=f"g{i}", color=c) for i, c in enumerate(GENRE_COLORS)]
    assert available_colors(taken) == []
    assert library.genres.pick_color(taken) in GENRE_COLORS

    almost = taken[1:]
    assert library.genres.pick_color(almost) == GENRE_COLORS[0]


@pytest.mark.asyncio
async def test_update_genre_checks_uniqueness_excluding_itself(library):
    fantasy = await library.genres.create_genre(USER, "Fantasy")
    await library.genres.create_genre(USER, "Horror")

    renamed = await library.genres.update_genre(USER, fantasy.id, name="FANTASY")
    assert renamed.name == "FANTASY"
    with pytest.raises(ValidationError):
        await library.genres.update_genre(USER, fantasy.id, name="horror")
    with pytest.raises(NotFoundError):
        await library.genres.update_genre(USER, "missing", name="X")


@pytest.mark.asyncio
async def test_delete_genre_strips_active_books_only(library, store):
    genre = await library.genres.create_genre(USER, "Fantasy")
    active = await add_book(library, "Dune", genres=[genre.id])
    binned = await add_book(library, "Emma", genres=[genre.id])
    await library.bin.soft_delete(USER, binned.id)

    updated = await library.genres.delete_genre(USER, genre.id)

    assert updated == 1
    assert (await book_doc(store, active.id))["genres"] == []
    assert (await book_doc(store, binned.id))["genres"] == [genre.id]
    assert await store.get_by_id(USER, EntityKind.GENRES, genre.id) is None


@pytest.mark.asyncio
async def test_update_book_counts_floors_at_zero(library):
    genre = await library.genres.create_genre(USER, "Fantasy")
    await library.genres.update_book_counts(USER, [], [genre.id, genre.id])
    assert (await library.genres.get_genre(USER, genre.id)).book_count == 0
    await library.genres.update_book_counts(USER, [genre.id, genre.id], [])
    assert (await library.genres.get_genre(USER, genre.id)).book_count == 2


@pytest.mark.asyncio
async def test_recalculate_book_counts_from_active_books(library, store):
    fantasy = await library.genres.create_genre(USER, "Fantasy")
    horror = await library.genres.create_genre(USER, "Horror")
    await add_book(library, "Dune", genres=[fantasy.id])
    emma = await add_book(library, "Emma", genres=[fantasy.id, horror.id])
    await library.bin.soft_delete(USER, emma.id)
    await store.update(USER, EntityKind.GENRES, fantasy.id, {"bookCount": 40})

    result = await library.genres.recalculate_book_counts(USER)

    assert result.to_dict() == {"updated": 1, "totalBooks": 1}
    genres = {g.id: g.book_count for g in await library.genres.get_genres(USER)}
    assert genres == {fantasy.id: 1, horror.id: 0}


@pytest.mark.asyncio
async def test_failed_delete_leaves_genre_books_and_cache(clock):
    store = BatchFailingStore(clock=clock)
    library = make_library(store, clock)
    genre = await library.genres.create_genre(USER, "Fantasy")
    book = await add_book(library, "Dune", genres=[genre.id])
    await library.genres.get_genres(USER)
    store.failing = True

    with pytest.raises(StoreError):
        await library.genres.delete_genre(USER, genre.id)

    assert (await store.get_by_id(USER, EntityKind.GENRES, genre.id))["name"] == "Fantasy"
    assert (await book_doc(store, book.id))["genres"] == [genre.id]
    assert library.cache.genres.is_valid(USER)
