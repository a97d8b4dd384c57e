"""
Merge Engine

Folds one entity into another of the same kind: dependents (books) are
repointed from ``source`` to ``target``, auxiliary data is unioned into
``target`` and ``source`` is deleted, all in a single write batch.

The algorithm is shared; what differs between genres and series (how a book
references the entity, what gets unioned) lives in a MergePolicy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import (
    Book,
    EntityKind,
    ExpectedBook,
    Genre,
    Series,
    sort_expected_books,
)
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore
from ..utils.normalization import clean_isbn
from .cache_service import CacheService
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    source_id: str
    target_id: str
    books_updated: int = 0
    count_added: int = 0
    expected_books_merged: int = 0


class MergePolicy(ABC):
    """Entity-specific parts of a merge."""

    kind: EntityKind
    label: str
    updated_event: str
    deleted_event: str

    @abstractmethod
    async def load(self, cache: CacheService, user_id: str) -> Dict[str, Any]:
        """Fresh id -> entity map of every mergeable entity."""

    @abstractmethod
    def references(self, book: Book, entity_id: str) -> bool:
        pass

    @abstractmethod
    def repoint(self, book: Book, source_id: str, target_id: str) -> Dict[str, Any]:
        """Fields to write on a dependent so it references target instead of source."""

    @abstractmethod
    def target_update(self, source: Any, target: Any, dependents: List[Book],
                      count_added: int) -> Dict[str, Any]:
        """Fields to write on the target, including its new bookCount."""

    def expected_books_merged(self, source: Any, target: Any) -> int:
        return 0


class GenreMergePolicy(MergePolicy):
    kind = EntityKind.GENRES
    label = 'Genre'
    updated_event = Events.GENRE_UPDATED
    deleted_event = Events.GENRE_DELETED

    async def load(self, cache: CacheService, user_id: str) -> Dict[str, Genre]:
        genres = await cache.get_genres(user_id, force_refresh=True)
        return {g.id: g for g in genres}

    def references(self, book: Book, entity_id: str) -> bool:
        return entity_id in book.genres

    def repoint(self, book: Book, source_id: str, target_id: str) -> Dict[str, Any]:
        # Set semantics: a book that already had the target keeps it once
        genres = [g for g in book.genres if g != source_id]
        if target_id not in genres:
            genres.append(target_id)
        return {"genres": genres}

    def target_update(self, source: Genre, target: Genre, dependents: List[Book],
                      count_added: int) -> Dict[str, Any]:
        return {"bookCount": target.book_count + count_added}


class SeriesMergePolicy(MergePolicy):
    kind = EntityKind.SERIES
    label = 'Series'
    updated_event = Events.SERIES_UPDATED
    deleted_event = Events.SERIES_DELETED

    async def load(self, cache: CacheService, user_id: str) -> Dict[str, Series]:
        series = await cache.get_series(user_id, force_refresh=True)
        return {s.id: s for s in series}

    def references(self, book: Book, entity_id: str) -> bool:
        return book.series_id == entity_id

    def repoint(self, book: Book, source_id: str, target_id: str) -> Dict[str, Any]:
        return {"seriesId": target_id}

    @staticmethod
    def merge_expected_books(target: List[ExpectedBook], source: List[ExpectedBook]) -> List[ExpectedBook]:
        """Union of expected books, deduplicated by ISBN then case-insensitive title."""
        merged = list(target)
        isbns = {clean_isbn(b.isbn) for b in merged if b.isbn}
        titles = {b.title.lower() for b in merged}
        for book in source:
            isbn = clean_isbn(book.isbn)
            if (isbn and isbn in isbns) or book.title.lower() in titles:
                continue
            merged.append(book)
            if isbn:
                isbns.add(isbn)
            titles.add(book.title.lower())
        return sort_expected_books(merged)

    def expected_books_merged(self, source: Series, target: Series) -> int:
        merged = self.merge_expected_books(target.expected_books, source.expected_books)
        return len(merged) - len(target.expected_books)

    def target_update(self, source: Series, target: Series, dependents: List[Book],
                      count_added: int) -> Dict[str, Any]:
        expected = self.merge_expected_books(target.expected_books, source.expected_books)
        book_count = target.book_count + count_added
        total = max(target.total_books or 0, source.total_books or 0, book_count + len(expected))
        return {
            "bookCount": book_count,
            "totalBooks": total or None,
            "expectedBooks": [b.to_dict() for b in expected],
        }


class MergeEngine:
    """Runs a merge for any MergePolicy."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus

    async def _active_dependents(self, user_id: str, policy: MergePolicy, entity_id: str) -> List[Book]:
        field_name = "genres" if policy.kind == EntityKind.GENRES else "seriesId"
        docs = await self.store.query_by_field(user_id, EntityKind.BOOKS, field_name, entity_id)
        books = [Book.from_dict(doc, doc["id"]) for doc in docs]
        return [b for b in books if not b.is_binned and policy.references(b, entity_id)]

    async def merge(self, user_id: str, source_id: str, target_id: str, policy: MergePolicy) -> MergeResult:
        """Fold ``source`` into ``target``.

        Raises ValidationError for a self-merge or an over-sized batch and
        NotFoundError for a missing entity, both before anything is written.
        """
        if source_id == target_id:
            raise ValidationError(f"Cannot merge a {policy.label.lower()} into itself")

        entities = await policy.load(self.cache, user_id)
        source = entities.get(source_id)
        target = entities.get(target_id)
        if source is None:
            raise NotFoundError(policy.kind.value, source_id, f"Source {policy.label.lower()} not found")
        if target is None:
            raise NotFoundError(policy.kind.value, target_id, f"Target {policy.label.lower()} not found")

        dependents = await self._active_dependents(user_id, policy, source_id)
        count_added = sum(1 for book in dependents if not policy.references(book, target_id))

        batch = self.store.batch()
        for book in dependents:
            update = policy.repoint(book, source_id, target_id)
            update["updatedAt"] = SERVER_TIMESTAMP
            batch.stage_update(user_id, EntityKind.BOOKS, book.id, update)
        target_update = policy.target_update(source, target, dependents, count_added)
        target_update["updatedAt"] = SERVER_TIMESTAMP
        batch.stage_update(user_id, policy.kind, target_id, target_update)
        batch.stage_delete(user_id, policy.kind, source_id)

        try:
            await batch.commit()
        except StoreError as e:
            logger.error(f"Error merging {policy.label.lower()} {source_id} into {target_id}: {e}")
            raise

        result = MergeResult(
            source_id=source_id,
            target_id=target_id,
            books_updated=len(dependents),
            count_added=count_added,
            expected_books_merged=policy.expected_books_merged(source, target),
        )
        logger.info(
            f"Merged {policy.label.lower()} {source_id} into {target_id}: "
            f"{result.books_updated} books repointed"
        )

        if policy.kind == EntityKind.GENRES:
            self.cache.invalidate_genres()
        else:
            self.cache.invalidate_series()
        if dependents:
            self.cache.invalidate_books(user_id)
        payload = {"user_id": user_id, "source_id": source_id, "target_id": target_id}
        self.event_bus.emit(policy.deleted_event, payload)
        self.event_bus.emit(policy.updated_event, payload)
        if dependents:
            self.event_bus.emit(Events.BOOK_SAVED, payload)
        return result
