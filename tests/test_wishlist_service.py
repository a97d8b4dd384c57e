import pytest

from bookshelf.domain.errors import NotFoundError, ValidationError
from bookshelf.domain.models import EntityKind, WishlistItem
from bookshelf.services.event_bus import Events

from conftest import USER


@pytest.mark.asyncio
async def test_add_rejects_duplicates_by_isbn_and_title(library):
    await library.wishlist.add(USER, WishlistItem(title="Dune", author="Frank Herbert", isbn="9780441172719"))

    with pytest.raises(ValidationError, match='"Dune" is already in your wishlist'):
        await library.wishlist.add(USER, WishlistItem(title="Other", author="X", isbn="978-0441172719"))
    with pytest.raises(ValidationError, match="already in your wishlist"):
        await library.wishlist.add(USER, WishlistItem(title="dune", author="FRANK HERBERT"))
    assert await library.wishlist.get_count(USER) == 1


@pytest.mark.asyncio
async def test_update_item_only_touches_allowed_fields(library, store):
    item = await library.wishlist.add(USER, WishlistItem(title="Dune", author="Herbert"))

    await library.wishlist.update_item(USER, item.id, {"priority": "high", "title": "Ignored"})
    doc = await store.get_by_id(USER, EntityKind.WISHLIST, item.id)
    assert doc["priority"] == "high"
    assert doc["title"] == "Dune"

    with pytest.raises(ValidationError, match="Priority"):
        await library.wishlist.update_item(USER, item.id, {"priority": "urgent"})


@pytest.mark.asyncio
async def test_changes_emit_wishlist_event(library):
    events = []
    library.event_bus.on(Events.WISHLIST_CHANGED, events.append)
    item = await library.wishlist.add(USER, WishlistItem(title="Dune", author="Herbert"))
    await library.wishlist.remove(USER, item.id)
    assert len(events) == 2
    assert await library.wishlist.get_all(USER) == []


@pytest.mark.asyncio
async def test_move_to_library_creates_book_and_removes_item(library, store):
    item = await library.wishlist.add(USER, WishlistItem(title="Dune", author="Herbert",
                                                         isbn="9780441172719", notes="gift"))

    book = await library.wishlist.move_to_library(USER, item.id)

    assert book.title == "Dune"
    assert book.isbn == "9780441172719"
    assert await store.get_by_id(USER, EntityKind.WISHLIST, item.id) is None
    assert [b.id for b in await library.books.get_books(USER)] == [book.id]
    with pytest.raises(NotFoundError):
        await library.wishlist.move_to_library(USER, item.id)
