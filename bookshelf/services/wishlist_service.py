"""
Wishlist Service

Wishlist items are unique per user by ISBN, else by normalized title + author.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import WISHLIST_PRIORITIES, Book, BookCovers, EntityKind, WishlistItem, now_utc
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore
from ..utils.normalization import clean_isbn, normalize_text
from .cache_service import CacheService
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('priority', 'notes', 'coverImageUrl')


def find_wishlist_duplicate(items: Iterable[WishlistItem], isbn: Optional[str], title: str,
                            author: Optional[str]) -> Optional[WishlistItem]:
    items = list(items)
    cleaned = clean_isbn(isbn)
    if cleaned:
        for item in items:
            if clean_isbn(item.isbn) == cleaned:
                return item
    normalized_title = normalize_text(title)
    normalized_author = normalize_text(author)
    for item in items:
        if normalize_text(item.title) == normalized_title and normalize_text(item.author) == normalized_author:
            return item
    return None


class WishlistService:
    """Service for wishlist operations."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self._clock = clock or now_utc

    def _changed(self, user_id: str, **details: Any) -> None:
        self.cache.invalidate_wishlist()
        self.event_bus.emit(Events.WISHLIST_CHANGED, dict(user_id=user_id, **details))

    async def get_all(self, user_id: str, force_refresh: bool = False) -> List[WishlistItem]:
        return await self.cache.get_wishlist(user_id, force_refresh)

    async def get_count(self, user_id: str) -> int:
        return len(await self.get_all(user_id))

    async def check_duplicate(self, user_id: str, isbn: Optional[str], title: str,
                              author: Optional[str]) -> Optional[WishlistItem]:
        return find_wishlist_duplicate(await self.get_all(user_id), isbn, title, author)

    async def add(self, user_id: str, item: WishlistItem) -> WishlistItem:
        item.title = (item.title or '').strip()
        item.author = (item.author or '').strip()
        if not item.title:
            raise ValidationError("Wishlist items need a title")
        existing = await self.check_duplicate(user_id, item.isbn, item.title, item.author)
        if existing:
            raise ValidationError(f'"{existing.title}" is already in your wishlist')

        doc = item.to_dict()
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        try:
            item.id = await self.store.create(user_id, EntityKind.WISHLIST, doc)
        except StoreError as e:
            logger.error(f"Error adding wishlist item: {e}")
            raise
        item.created_at = item.updated_at = self._clock()
        self._changed(user_id, item_id=item.id)
        return item

    async def update_item(self, user_id: str, item_id: str, updates: Dict[str, Any]) -> None:
        """Update priority, notes or coverImageUrl; other keys are ignored."""
        filtered = {k: updates[k] for k in UPDATABLE_FIELDS if k in updates}
        if not filtered:
            return
        priority = filtered.get("priority")
        if priority is not None and priority not in WISHLIST_PRIORITIES:
            raise ValidationError(f"Priority must be one of {', '.join(WISHLIST_PRIORITIES)}")
        filtered["updatedAt"] = SERVER_TIMESTAMP
        try:
            await self.store.update(user_id, EntityKind.WISHLIST, item_id, filtered)
        except StoreError as e:
            logger.error(f"Error updating wishlist item: {e}")
            raise
        self._changed(user_id, item_id=item_id)

    async def remove(self, user_id: str, item_id: str) -> None:
        try:
            await self.store.delete(user_id, EntityKind.WISHLIST, item_id)
        except StoreError as e:
            logger.error(f"Error removing wishlist item: {e}")
            raise
        self._changed(user_id, item_id=item_id)

    async def move_to_library(self, user_id: str, item_id: str) -> Book:
        """Turn a wishlist item into an active book; both writes commit together."""
        doc = await self.store.get_by_id(user_id, EntityKind.WISHLIST, item_id)
        if doc is None:
            raise NotFoundError('wishlist', item_id, 'Wishlist item not found')
        item = WishlistItem.from_dict(doc, item_id)

        book = Book(
            title=item.title,
            author=item.author or None,
            isbn=item.isbn,
            cover_image_url=item.cover_image_url,
            covers=item.covers or BookCovers(),
            publisher=item.publisher,
            published_date=item.published_date,
            page_count=item.page_count,
            notes=item.notes,
        )
        book.validate()
        book_doc = book.to_dict()
        book_doc["createdAt"] = SERVER_TIMESTAMP
        book_doc["updatedAt"] = SERVER_TIMESTAMP

        batch = self.store.batch()
        book.id = batch.stage_create(user_id, EntityKind.BOOKS, book_doc)
        batch.stage_delete(user_id, EntityKind.WISHLIST, item_id)
        try:
            await batch.commit()
        except StoreError as e:
            logger.error(f"Error moving wishlist item to library: {e}")
            raise

        book.created_at = book.updated_at = self._clock()
        self._changed(user_id, item_id=item_id)
        self.cache.invalidate_books(user_id)
        self.event_bus.emit(Events.BOOK_SAVED, {"user_id": user_id, "book_id": book.id})
        logger.info(f"Moved wishlist item {item_id} to library as book {book.id}")
        return book
