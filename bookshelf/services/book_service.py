"""
Book Service

Book reads and writes. Every write keeps the genre and series ``bookCount``
counters in step with the book's references.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import Book, EntityKind, now_utc
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore
from ..utils.normalization import clean_isbn, normalize_text
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .genre_service import GenreService
from .series_service import SeriesService

logger = logging.getLogger(__name__)

# Fields a caller may not change through update_book
_PROTECTED_FIELDS = {"id", "createdAt", "updatedAt", "deletedAt"}


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool = False
    match_type: Optional[str] = None  # 'isbn' | 'title-author'
    existing_book: Optional[Book] = None


class BookService:
    """Service for book operations."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 genre_service: GenreService, series_service: SeriesService,
                 clock: Optional[Callable[[], datetime]] = None, duplicate_check_limit: int = 200):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self.genre_service = genre_service
        self.series_service = series_service
        self._clock = clock or now_utc
        self.duplicate_check_limit = duplicate_check_limit

    async def get_books(self, user_id: str, force_refresh: bool = False) -> List[Book]:
        """Active books of the user."""
        return await self.cache.get_books(user_id, force_refresh)

    async def get_book(self, user_id: str, book_id: str) -> Book:
        """Any book by id, binned ones included."""
        doc = await self.store.get_by_id(user_id, EntityKind.BOOKS, book_id)
        if doc is None:
            raise NotFoundError('books', book_id, 'Book not found')
        return Book.from_dict(doc, doc["id"])

    async def check_for_duplicate(self, user_id: str, isbn: Optional[str], title: str,
                                  author: Optional[str]) -> DuplicateCheckResult:
        """Look for an existing book with the same ISBN, else the same title and author.

        The title/author scan covers at most ``duplicate_check_limit`` books.
        """
        cleaned = clean_isbn(isbn)
        if cleaned:
            docs = await self.store.query_by_field(user_id, EntityKind.BOOKS, "isbn", cleaned)
            if docs:
                return DuplicateCheckResult(True, 'isbn', Book.from_dict(docs[0], docs[0]["id"]))

        normalized_title = normalize_text(title)
        normalized_author = normalize_text(author)
        docs = await self.store.get_all(user_id, EntityKind.BOOKS)
        for doc in docs[:self.duplicate_check_limit]:
            if (normalize_text(doc.get("title")) == normalized_title
                    and normalize_text(doc.get("author")) == normalized_author):
                return DuplicateCheckResult(True, 'title-author', Book.from_dict(doc, doc["id"]))
        return DuplicateCheckResult()

    async def create_book(self, user_id: str, book: Book) -> Book:
        """Validate and insert a new active book, then bump its genre/series counters."""
        book.validate()
        book.deleted_at = None
        doc = book.to_dict()
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        try:
            book.id = await self.store.create(user_id, EntityKind.BOOKS, doc)
        except StoreError as e:
            logger.error(f"Error creating book: {e}")
            raise

        book.created_at = book.updated_at = self._clock()
        self.cache.invalidate_books(user_id)
        if book.genres:
            await self.genre_service.update_book_counts(user_id, book.genres, [])
        if book.series_id:
            await self.series_service.update_book_counts(user_id, book.series_id, None)
        self.event_bus.emit(Events.BOOK_SAVED, {"user_id": user_id, "book_id": book.id})
        logger.info(f"Created book {book.title} ({book.id})")
        return book

    async def update_book(self, user_id: str, book_id: str, updates: Dict[str, Any]) -> Book:
        """Apply camelCase field updates; counters follow genre and series changes."""
        protected = _PROTECTED_FIELDS.intersection(updates)
        if protected:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(protected))}")

        existing = await self.get_book(user_id, book_id)
        merged = existing.to_dict()
        merged.update(updates)
        book = Book.from_dict(merged, book_id)
        book.validate()

        new_doc = book.to_dict()
        change = {key: new_doc.get(key) for key in updates}
        change["updatedAt"] = SERVER_TIMESTAMP
        try:
            await self.store.update(user_id, EntityKind.BOOKS, book_id, change)
        except StoreError as e:
            logger.error(f"Error updating book: {e}")
            raise

        book.updated_at = self._clock()
        self.cache.invalidate_books(user_id)
        # Binned books never count
        if not existing.is_binned:
            added = [g for g in book.genres if g not in existing.genres]
            removed = [g for g in existing.genres if g not in book.genres]
            if added or removed:
                await self.genre_service.update_book_counts(user_id, added, removed)
            if book.series_id != existing.series_id:
                await self.series_service.update_book_counts(user_id, book.series_id, existing.series_id)
        self.event_bus.emit(Events.BOOK_SAVED, {"user_id": user_id, "book_id": book_id})
        return book
