"""
Bin Service

Soft-delete lifecycle for books: Active -> Binned -> Restored | Purged.

Binned books keep their genre and series references so a restore is a single
field change; restore repairs references whose targets disappeared meanwhile
and reports them as warnings instead of failing. Books binned for the full
retention window are purged whenever the bin is loaded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import Book, EntityKind, Series, now_utc, to_millis
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore, commit_deletes_in_chunks
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .genre_service import GenreService
from .series_service import SeriesService

logger = logging.getLogger(__name__)

BIN_RETENTION_DAYS = 30
_DAY = timedelta(days=1)


@dataclass
class SoftDeleteResult:
    book_id: str
    series_deleted: bool = False


@dataclass
class RestoreResult:
    book: Book
    warnings: List[str] = field(default_factory=list)
    series_restored: bool = False


@dataclass
class BinEntry:
    book: Book
    days_remaining: int


@dataclass
class BinView:
    """What the bin page shows after the automatic purge ran."""
    entries: List[BinEntry] = field(default_factory=list)
    purged: int = 0
    series_purged: int = 0


def _genre_warning(removed: int) -> str:
    return f"{removed} genre{'s' if removed > 1 else ''} no longer exist{'s' if removed == 1 else ''}"


class BinService:
    """Service for binned books."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 genre_service: GenreService, series_service: SeriesService,
                 clock: Optional[Callable[[], datetime]] = None, retention_days: int = BIN_RETENTION_DAYS):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self.genre_service = genre_service
        self.series_service = series_service
        self._clock = clock or now_utc
        self.retention_days = retention_days

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    # ---------------------- Time rules ----------------------
    def is_expired(self, deleted_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True once the full retention window has elapsed (the boundary instant included)."""
        if deleted_at is None:
            return False
        now = now or self._clock()
        return now - deleted_at >= self.retention

    def days_remaining(self, deleted_at: Optional[datetime], now: Optional[datetime] = None) -> int:
        if deleted_at is None:
            return self.retention_days
        now = now or self._clock()
        elapsed_days = (now - deleted_at) // _DAY
        return max(0, self.retention_days - elapsed_days)

    # ---------------------- Queries ----------------------
    async def get_binned_books(self, user_id: str) -> List[Book]:
        """Binned books, most recently deleted first."""
        docs = await self.store.get_all(user_id, EntityKind.BOOKS)
        binned = [b for b in (Book.from_dict(d, d["id"]) for d in docs) if b.is_binned]
        return sorted(binned, key=lambda b: b.deleted_at, reverse=True)

    async def _get_book(self, user_id: str, book_id: str) -> Book:
        doc = await self.store.get_by_id(user_id, EntityKind.BOOKS, book_id)
        if doc is None:
            raise NotFoundError('books', book_id, 'Book not found')
        return Book.from_dict(doc, book_id)

    async def is_last_book_in_series(self, user_id: str, book: Book) -> bool:
        """True when no other active book belongs to the book's series."""
        if not book.series_id:
            return False
        docs = await self.store.query_by_field(user_id, EntityKind.BOOKS, "seriesId", book.series_id)
        others = [d for d in docs if d["id"] != book.id and not d.get("deletedAt")]
        return not others

    # ---------------------- Soft delete / restore ----------------------
    async def soft_delete(self, user_id: str, book_id: str, delete_empty_series: bool = False) -> SoftDeleteResult:
        """Move a book to the bin.

        With ``delete_empty_series`` the book's series is soft-deleted too when
        this was its last active book; the caller has to ask for it.
        """
        book = await self._get_book(user_id, book_id)
        if book.is_binned:
            return SoftDeleteResult(book_id)

        last_in_series = delete_empty_series and await self.is_last_book_in_series(user_id, book)
        try:
            await self.store.update(user_id, EntityKind.BOOKS, book_id, {
                "deletedAt": to_millis(self._clock()),
                "updatedAt": SERVER_TIMESTAMP,
            })
        except StoreError as e:
            logger.error(f"Error moving book {book_id} to bin: {e}")
            raise

        self.cache.invalidate_books(user_id)
        if book.genres:
            await self.genre_service.update_book_counts(user_id, [], book.genres)
        if book.series_id:
            await self.series_service.update_book_counts(user_id, None, book.series_id)
        result = SoftDeleteResult(book_id)
        if last_in_series:
            await self.series_service.soft_delete_series(user_id, book.series_id)
            result.series_deleted = True

        self.event_bus.emit(Events.BOOK_DELETED, {"user_id": user_id, "book_id": book_id, "soft": True})
        logger.info(f"Moved book {book_id} to bin")
        return result

    async def restore(self, user_id: str, book_id: str) -> RestoreResult:
        """Bring a binned book back. Dangling references are dropped and reported, never fatal."""
        book = await self._get_book(user_id, book_id)
        if not book.is_binned:
            return RestoreResult(book)

        warnings: List[str] = []
        update: Dict[str, Any] = {"deletedAt": None, "updatedAt": SERVER_TIMESTAMP}
        series_counts = False
        series_restored = False

        if book.series_id:
            active = await self.series_service.get_all_series(user_id, force_refresh=True)
            series_counts = any(s.id == book.series_id for s in active)
            if not series_counts:
                series = await self.series_service.get_series_by_id(user_id, book.series_id)
                if series is None:
                    update["seriesId"] = None
                    update["seriesPosition"] = None
                    book.series_id = None
                    book.series_position = None
                    warnings.append("Series no longer exists")
                elif series.is_deleted:
                    series_counts, series_restored = await self._restore_series(user_id, book, series,
                                                                                update, warnings)

        valid_genres = list(book.genres)
        if valid_genres:
            existing = {g.id for g in await self.genre_service.get_genres(user_id, force_refresh=True)}
            valid_genres = [g for g in book.genres if g in existing]
            removed = len(book.genres) - len(valid_genres)
            if removed:
                update["genres"] = valid_genres
                book.genres = valid_genres
                warnings.append(_genre_warning(removed))

        try:
            await self.store.update(user_id, EntityKind.BOOKS, book_id, update)
        except StoreError as e:
            logger.error(f"Error restoring book {book_id}: {e}")
            raise
        book.deleted_at = None

        self.cache.invalidate_books(user_id)
        if valid_genres:
            await self.genre_service.update_book_counts(user_id, valid_genres, [])
        if book.series_id and series_counts:
            await self.series_service.update_book_counts(user_id, book.series_id, None)

        self.event_bus.emit(Events.BOOK_RESTORED, {"user_id": user_id, "book_id": book_id})
        if warnings:
            logger.warning(f"Restored book {book_id} with warnings: {'; '.join(warnings)}")
        else:
            logger.info(f"Restored book {book_id}")
        return RestoreResult(book, warnings, series_restored)

    async def _restore_series(self, user_id: str, book: Book, series: Series,
                              update: Dict[str, Any], warnings: List[str]):
        try:
            await self.series_service.restore_series(user_id, series.id)
            return True, True
        except ValidationError:
            # An active series took the name meanwhile; link the book to that one
            replacement = await self.series_service.find_by_name(user_id, series.name)
            if replacement is None:
                raise
            update["seriesId"] = replacement.id
            book.series_id = replacement.id
            warnings.append(f'Series "{series.name}" was recreated; book linked to the existing series')
            return True, False

    # ---------------------- Purge ----------------------
    async def permanently_delete(self, user_id: str, book_id: str) -> None:
        """Manual purge of one binned book."""
        book = await self._get_book(user_id, book_id)
        if not book.is_binned:
            raise ValidationError("Only books in the bin can be permanently deleted")
        try:
            await self.store.delete(user_id, EntityKind.BOOKS, book_id)
        except StoreError as e:
            logger.error(f"Error permanently deleting book {book_id}: {e}")
            raise
        self.cache.invalidate_books(user_id)
        self.event_bus.emit(Events.BOOK_DELETED, {"user_id": user_id, "book_id": book_id, "soft": False})

    async def empty_bin(self, user_id: str) -> int:
        """Manual purge of every binned book regardless of age."""
        binned = await self.get_binned_books(user_id)
        return await self._purge(user_id, binned)

    async def purge_expired(self, user_id: str, binned: Optional[List[Book]] = None,
                            now: Optional[datetime] = None) -> int:
        """Hard-delete binned books whose retention window has elapsed."""
        if binned is None:
            binned = await self.get_binned_books(user_id)
        now = now or self._clock()
        expired = [b for b in binned if self.is_expired(b.deleted_at, now)]
        return await self._purge(user_id, expired)

    async def _purge(self, user_id: str, books: List[Book]) -> int:
        if not books:
            return 0
        try:
            purged = await commit_deletes_in_chunks(self.store, user_id, EntityKind.BOOKS, [b.id for b in books])
        except StoreError as e:
            logger.error(f"Error purging binned books: {e}")
            raise
        self.cache.invalidate_books(user_id)
        self.event_bus.emit(Events.BOOK_DELETED, {"user_id": user_id, "soft": False, "count": purged})
        logger.info(f"Purged {purged} books from bin")
        return purged

    async def purge_expired_series(self, user_id: str) -> int:
        """Hard-delete soft-deleted series past retention that no binned book still references."""
        now = self._clock()
        docs = await self.store.get_all(user_id, EntityKind.SERIES)
        candidates = [s for s in (Series.from_dict(d, d["id"]) for d in docs)
                      if s.is_deleted and self.is_expired(s.deleted_at, now)]
        if not candidates:
            return 0
        referenced = {b.series_id for b in await self.get_binned_books(user_id) if b.series_id}
        doomed = [s.id for s in candidates if s.id not in referenced]
        if not doomed:
            return 0
        try:
            purged = await commit_deletes_in_chunks(self.store, user_id, EntityKind.SERIES, doomed)
        except StoreError as e:
            logger.error(f"Error purging binned series: {e}")
            raise
        self.cache.invalidate_series()
        self.event_bus.emit(Events.SERIES_DELETED, {"user_id": user_id, "count": purged})
        return purged

    async def load_bin(self, user_id: str) -> BinView:
        """Purge expired items, then list what is left with days remaining."""
        now = self._clock()
        binned = await self.get_binned_books(user_id)
        purged = await self.purge_expired(user_id, binned, now)
        series_purged = await self.purge_expired_series(user_id)

        remaining = [b for b in binned if not self.is_expired(b.deleted_at, now)]
        entries = [BinEntry(b, self.days_remaining(b.deleted_at, now)) for b in remaining]
        return BinView(entries=entries, purged=purged, series_purged=series_purged)
