"""Series Service

CRUD for Series with name uniqueness among non-deleted series, expected-book
bookkeeping, soft delete/restore (used by the bin when the last book of a
series goes) and bookCount maintenance.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import (
    Book,
    EntityKind,
    ExpectedBook,
    ExpectedBookSource,
    RecountResult,
    Series,
    format_timestamp,
    now_utc,
    sort_expected_books,
)
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore, commit_updates_in_chunks
from ..utils.normalization import clean_isbn, normalize_series_name, series_names_similar
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .merge_engine import MergeEngine, MergeResult, SeriesMergePolicy

logger = logging.getLogger(__name__)


def find_potential_duplicates(series: List[Series]) -> List[List[Series]]:
    """Group series whose names look like the same series (merge suggestions)."""
    groups: List[List[Series]] = []
    processed = set()
    for s in series:
        if s.id in processed:
            continue
        matches = [
            other for other in series
            if other.id != s.id and other.id not in processed and series_names_similar(s.name, other.name)
        ]
        if matches:
            group = [s] + matches
            processed.update(g.id for g in group)
            groups.append(group)
    return groups


def count_books_per_series(books: Iterable[Book]) -> Counter:
    return Counter(b.series_id for b in books if b.series_id and not b.is_binned)


def _normalize_total(total_books: Optional[int]) -> Optional[int]:
    if total_books is None:
        return None
    try:
        total = int(total_books)
    except (TypeError, ValueError) as e:
        raise ValidationError("Total books must be a number") from e
    return total if total > 0 else None


class SeriesService:
    """Service for Series operations."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 merge_engine: MergeEngine, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self.merge_engine = merge_engine
        self._clock = clock or now_utc

    # ---------------------- Retrieval ----------------------
    async def get_all_series(self, user_id: str, force_refresh: bool = False) -> List[Series]:
        """Active series (soft-deleted ones excluded)."""
        return await self.cache.get_series(user_id, force_refresh)

    async def get_series(self, user_id: str, series_id: str) -> Series:
        """Active series by id."""
        for series in await self.get_all_series(user_id):
            if series.id == series_id:
                return series
        raise NotFoundError('series', series_id, 'Series not found')

    async def get_series_by_id(self, user_id: str, series_id: str) -> Optional[Series]:
        """Series by id including soft-deleted ones; None when it does not exist."""
        doc = await self.store.get_by_id(user_id, EntityKind.SERIES, series_id)
        return Series.from_dict(doc, doc["id"]) if doc else None

    async def find_by_name(self, user_id: str, name: str) -> Optional[Series]:
        normalized = normalize_series_name(name)
        return next((s for s in await self.get_all_series(user_id) if s.normalized_name == normalized), None)

    async def find_potential_duplicates(self, user_id: str) -> List[List[Series]]:
        return find_potential_duplicates(await self.get_all_series(user_id))

    @staticmethod
    def _check_name(series: Iterable[Series], normalized: str, exclude_series_id: Optional[str] = None) -> None:
        for s in series:
            if s.normalized_name == normalized and s.id != exclude_series_id:
                raise ValidationError(f'Series "{s.name}" already exists')

    def _emit(self, event: str, user_id: str, series_id: Optional[str]) -> None:
        self.cache.invalidate_series()
        self.event_bus.emit(event, {"user_id": user_id, "series_id": series_id})

    # ---------------------- Mutations ----------------------
    async def create_series(self, user_id: str, name: str, description: Optional[str] = None,
                            total_books: Optional[int] = None) -> Series:
        name = (name or '').strip()
        normalized = normalize_series_name(name)
        if not normalized:
            raise ValidationError("Series name is required")
        self._check_name(await self.get_all_series(user_id), normalized)

        series = Series(
            name=name,
            normalized_name=normalized,
            description=(description or '').strip() or None,
            total_books=_normalize_total(total_books),
        )
        doc = series.to_dict()
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        try:
            series.id = await self.store.create(user_id, EntityKind.SERIES, doc)
        except StoreError as e:
            logger.error(f"Error creating series: {e}")
            raise

        series.created_at = series.updated_at = self._clock()
        self._emit(Events.SERIES_CREATED, user_id, series.id)
        logger.info(f"Created series {series.name} ({series.id})")
        return series

    async def update_series(self, user_id: str, series_id: str, name: Optional[str] = None,
                            description: Optional[str] = None, total_books: Any = ...,
                            expected_books: Optional[List[ExpectedBook]] = None) -> Series:
        """Update the given fields. ``total_books`` defaults to "unchanged"; pass None to clear it."""
        all_series = await self.get_all_series(user_id)
        series = next((s for s in all_series if s.id == series_id), None)
        if series is None:
            raise NotFoundError('series', series_id, 'Series not found')

        update: Dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            normalized = normalize_series_name(name)
            if not normalized:
                raise ValidationError("Series name is required")
            self._check_name(all_series, normalized, series_id)
            series.name, series.normalized_name = name, normalized
            update["name"] = name
            update["normalizedName"] = normalized
        if description is not None:
            series.description = description.strip() or None
            update["description"] = series.description
        if total_books is not ...:
            series.total_books = _normalize_total(total_books)
            update["totalBooks"] = series.total_books
        if expected_books is not None:
            series.expected_books = sort_expected_books(list(expected_books))
            update["expectedBooks"] = [b.to_dict() for b in series.expected_books]
        if not update:
            return series

        update["updatedAt"] = SERVER_TIMESTAMP
        try:
            await self.store.update(user_id, EntityKind.SERIES, series_id, update)
        except StoreError as e:
            logger.error(f"Error updating series: {e}")
            raise
        series.updated_at = self._clock()
        self._emit(Events.SERIES_UPDATED, user_id, series_id)
        return series

    async def delete_series(self, user_id: str, series_id: str) -> int:
        """Hard delete; unlinks every active book. Returns the number of books updated."""
        series = await self.get_series_by_id(user_id, series_id)
        if series is None:
            raise NotFoundError('series', series_id, 'Series not found')

        docs = await self.store.query_by_field(user_id, EntityKind.BOOKS, "seriesId", series_id)
        active = [b for b in (Book.from_dict(d, d["id"]) for d in docs) if not b.is_binned]

        batch = self.store.batch()
        for book in active:
            batch.stage_update(user_id, EntityKind.BOOKS, book.id, {
                "seriesId": None,
                "seriesPosition": None,
                "updatedAt": SERVER_TIMESTAMP,
            })
        batch.stage_delete(user_id, EntityKind.SERIES, series_id)
        try:
            await batch.commit()
        except StoreError as e:
            logger.error(f"Error deleting series: {e}")
            raise

        if active:
            self.cache.invalidate_books(user_id)
        self._emit(Events.SERIES_DELETED, user_id, series_id)
        logger.info(f"Deleted series {series_id}, updated {len(active)} books")
        return len(active)

    async def soft_delete_series(self, user_id: str, series_id: str) -> None:
        series = await self.get_series_by_id(user_id, series_id)
        if series is None:
            raise NotFoundError('series', series_id, 'Series not found')
        if series.is_deleted:
            return
        try:
            await self.store.update(user_id, EntityKind.SERIES, series_id, {
                "deletedAt": format_timestamp(self._clock()),
                "updatedAt": SERVER_TIMESTAMP,
            })
        except StoreError as e:
            logger.error(f"Error soft deleting series: {e}")
            raise
        self._emit(Events.SERIES_DELETED, user_id, series_id)

    async def restore_series(self, user_id: str, series_id: str) -> Series:
        """Clear deletedAt. Refused when an active series took the name meanwhile."""
        series = await self.get_series_by_id(user_id, series_id)
        if series is None:
            raise NotFoundError('series', series_id, 'Series not found')
        if not series.is_deleted:
            return series
        self._check_name(await self.get_all_series(user_id, force_refresh=True), series.normalized_name, series_id)
        try:
            await self.store.update(user_id, EntityKind.SERIES, series_id, {
                "deletedAt": None,
                "updatedAt": SERVER_TIMESTAMP,
            })
        except StoreError as e:
            logger.error(f"Error restoring series: {e}")
            raise
        series.deleted_at = None
        self._emit(Events.SERIES_UPDATED, user_id, series_id)
        return series

    async def merge_series(self, user_id: str, source_series_id: str, target_series_id: str) -> MergeResult:
        return await self.merge_engine.merge(user_id, source_series_id, target_series_id, SeriesMergePolicy())

    # ---------------------- Expected books ----------------------
    async def add_expected_book(self, user_id: str, series_id: str, title: str, isbn: Optional[str] = None,
                                position: Optional[float] = None,
                                source: ExpectedBookSource = ExpectedBookSource.MANUAL) -> Series:
        series = await self.get_series(user_id, series_id)
        title = (title or '').strip()
        if not title:
            raise ValidationError("Expected books need a title")
        cleaned = clean_isbn(isbn) or None
        for existing in series.expected_books:
            if (cleaned and clean_isbn(existing.isbn) == cleaned) or existing.title.lower() == title.lower():
                raise ValidationError("Book already exists in expected books")

        expected = series.expected_books + [ExpectedBook(title=title, isbn=cleaned,
                                                         position=position or None, source=source)]
        return await self.update_series(user_id, series_id, expected_books=expected)

    async def remove_expected_book(self, user_id: str, series_id: str, index: int) -> Series:
        series = await self.get_series(user_id, series_id)
        if index < 0 or index >= len(series.expected_books):
            raise ValidationError("Invalid book index")
        expected = list(series.expected_books)
        del expected[index]
        return await self.update_series(user_id, series_id, expected_books=expected)

    # ---------------------- Counters ----------------------
    async def update_book_counts(self, user_id: str, added_series_id: Optional[str] = None,
                                 removed_series_id: Optional[str] = None) -> None:
        """Move one book between series counters (floored at zero)."""
        if added_series_id == removed_series_id:
            return
        updates = []
        for series_id, delta in ((added_series_id, 1), (removed_series_id, -1)):
            if not series_id:
                continue
            series = await self.get_series_by_id(user_id, series_id)
            if series is None:
                continue
            updates.append((series_id, {
                "bookCount": max(0, series.book_count + delta),
                "updatedAt": SERVER_TIMESTAMP,
            }))
        if not updates:
            return
        try:
            await commit_updates_in_chunks(self.store, user_id, EntityKind.SERIES, updates)
        except StoreError as e:
            logger.error(f"Error updating series book counts: {e}")
            raise
        self._emit(Events.SERIES_UPDATED, user_id, None)

    async def recalculate_book_counts(self, user_id: str) -> RecountResult:
        """Recompute every series' bookCount from a full scan of active books."""
        docs = await self.store.get_all(user_id, EntityKind.BOOKS)
        books = [Book.from_dict(doc, doc["id"]) for doc in docs]
        series_docs = await self.store.get_all(user_id, EntityKind.SERIES)
        all_series = [Series.from_dict(doc, doc["id"]) for doc in series_docs]
        counts = count_books_per_series(books)

        updates = [
            (s.id, {"bookCount": counts.get(s.id, 0), "updatedAt": SERVER_TIMESTAMP})
            for s in all_series
            if counts.get(s.id, 0) != s.book_count
        ]
        if updates:
            try:
                await commit_updates_in_chunks(self.store, user_id, EntityKind.SERIES, updates)
            except StoreError as e:
                logger.error(f"Error recalculating series book counts: {e}")
                raise
            self.event_bus.emit(Events.SERIES_UPDATED, {"user_id": user_id})
        self.cache.invalidate_series()

        result = RecountResult(updated=len(updates), total_books=sum(1 for b in books if not b.is_binned))
        logger.info(f"Recalculated series counts: {result.updated} updated, {result.total_books} active books")
        return result
