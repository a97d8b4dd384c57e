"""
Genre Service

Genre CRUD with per-user uniqueness of the normalized name and of the colour,
plus maintenance of the materialized ``bookCount`` counters.
"""

import logging
import random
from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set

from ..domain.errors import NotFoundError, StoreError, ValidationError
from ..domain.models import MAX_GENRE_NAME_LENGTH, Book, EntityKind, Genre, RecountResult, now_utc
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore, commit_updates_in_chunks
from ..utils.normalization import normalize_genre_name
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .merge_engine import GenreMergePolicy, MergeEngine, MergeResult

logger = logging.getLogger(__name__)


# Tailwind 200-800 shades in rainbow order, then neutrals
GENRE_COLORS = [
    # reds
    '#fecaca', '#fca5a5', '#f87171', '#ef4444', '#dc2626', '#b91c1c', '#991b1b',
    # roses
    '#fecdd3', '#fda4af', '#fb7185', '#f43f5e', '#e11d48', '#be123c',
    # oranges
    '#fed7aa', '#fdba74', '#fb923c', '#f97316', '#ea580c', '#c2410c', '#9a3412',
    # ambers
    '#fde68a', '#fcd34d', '#fbbf24', '#f59e0b', '#d97706', '#b45309',
    # yellows
    '#fef08a', '#fde047', '#facc15', '#eab308', '#ca8a04',
    # limes
    '#d9f99d', '#bef264', '#a3e635', '#84cc16', '#65a30d', '#4d7c0f',
    # greens
    '#bbf7d0', '#86efac', '#4ade80', '#22c55e', '#16a34a', '#15803d', '#166534',
    # emeralds
    '#a7f3d0', '#6ee7b7', '#34d399', '#10b981', '#059669', '#047857',
    # teals
    '#99f6e4', '#5eead4', '#2dd4bf', '#14b8a6', '#0d9488', '#0f766e',
    # cyans
    '#a5f3fc', '#67e8f9', '#22d3ee', '#06b6d4', '#0891b2', '#0e7490',
    # skys
    '#bae6fd', '#7dd3fc', '#38bdf8', '#0ea5e9', '#0284c7', '#0369a1',
    # blues
    '#bfdbfe', '#93c5fd', '#60a5fa', '#3b82f6', '#2563eb', '#1d4ed8', '#1e40af',
    # indigos
    '#c7d2fe', '#a5b4fc', '#818cf8', '#6366f1', '#4f46e5', '#4338ca',
    # violets
    '#ddd6fe', '#c4b5fd', '#a78bfa', '#8b5cf6', '#7c3aed', '#6d28d9', '#5b21b6',
    # purples
    '#e9d5ff', '#d8b4fe', '#c084fc', '#a855f7', '#9333ea', '#7e22ce', '#6b21a8',
    # fuchsias
    '#f5d0fe', '#f0abfc', '#e879f9', '#d946ef', '#c026d3', '#a21caf',
    # pinks
    '#fbcfe8', '#f9a8d4', '#f472b6', '#ec4899', '#db2777', '#be185d',
    # stone
    '#e7e5e4', '#d6d3d1', '#a8a29e', '#78716c', '#57534e',
    # zinc
    '#e4e4e7', '#d4d4d8', '#a1a1aa', '#71717a', '#52525b',
    # slate
    '#e2e8f0', '#cbd5e1', '#94a3b8', '#64748b', '#475569',
]

_PALETTE = frozenset(c.lower() for c in GENRE_COLORS)


def is_valid_color(color: Optional[str]) -> bool:
    """True when the colour is one of the palette entries (case-insensitive)."""
    return bool(color) and color.lower() in _PALETTE


def validate_genre_name(name: Optional[str]) -> str:
    """Return the normalized key for a genre name, or raise ValidationError."""
    normalized = normalize_genre_name(name or '')
    if not normalized:
        raise ValidationError("Genre name is required")
    if len(name.strip()) > MAX_GENRE_NAME_LENGTH:
        raise ValidationError(f"Genre name must be {MAX_GENRE_NAME_LENGTH} characters or less")
    return normalized


def used_colors(genres: Iterable[Genre], exclude_genre_id: Optional[str] = None) -> Set[str]:
    return {g.color.lower() for g in genres if g.id != exclude_genre_id and g.color}


def available_colors(genres: Iterable[Genre], exclude_genre_id: Optional[str] = None) -> List[str]:
    """Palette colours not yet taken by another genre."""
    used = used_colors(genres, exclude_genre_id)
    return [c for c in GENRE_COLORS if c.lower() not in used]


def count_books_per_genre(books: Iterable[Book]) -> Counter:
    counts: Counter = Counter()
    for book in books:
        if book.is_binned:
            continue
        counts.update(set(book.genres))
    return counts


class GenreService:
    """Service for genre operations."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 merge_engine: MergeEngine, clock: Optional[Callable[[], datetime]] = None,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self.merge_engine = merge_engine
        self._clock = clock or now_utc
        self._rng = rng or random.Random()

    # ---------------------- Retrieval ----------------------
    async def get_genres(self, user_id: str, force_refresh: bool = False) -> List[Genre]:
        return await self.cache.get_genres(user_id, force_refresh)

    async def get_genre(self, user_id: str, genre_id: str) -> Genre:
        genres = await self.get_genres(user_id)
        for genre in genres:
            if genre.id == genre_id:
                return genre
        raise NotFoundError('genres', genre_id, 'Genre not found')

    def pick_color(self, genres: Iterable[Genre]) -> str:
        """Uniform sample from the unused palette, or the full palette once exhausted."""
        available = available_colors(genres)
        return self._rng.choice(available or GENRE_COLORS)

    @staticmethod
    def _check_name(genres: Iterable[Genre], normalized: str, exclude_genre_id: Optional[str] = None) -> None:
        for genre in genres:
            if genre.normalized_name == normalized and genre.id != exclude_genre_id:
                raise ValidationError(f'Genre "{genre.name}" already exists')

    @staticmethod
    def _check_color(genres: Iterable[Genre], color: str, exclude_genre_id: Optional[str] = None) -> None:
        if not is_valid_color(color):
            raise ValidationError("Please select a colour from the palette")
        if color.lower() in used_colors(genres, exclude_genre_id):
            raise ValidationError('This colour is already used by another genre')

    # ---------------------- Mutations ----------------------
    async def create_genre(self, user_id: str, name: str, color: Optional[str] = None) -> Genre:
        """Create a genre; the colour is auto-assigned when not supplied."""
        name = (name or '').strip()
        normalized = validate_genre_name(name)

        genres = await self.get_genres(user_id)
        self._check_name(genres, normalized)
        if color:
            self._check_color(genres, color)
        else:
            color = self.pick_color(genres)

        genre = Genre(name=name, normalized_name=normalized, color=color, book_count=0)
        doc = genre.to_dict()
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        try:
            genre.id = await self.store.create(user_id, EntityKind.GENRES, doc)
        except StoreError as e:
            logger.error(f"Error creating genre: {e}")
            raise

        # Server timestamps are not readable locally; redisplay uses the wall clock
        genre.created_at = genre.updated_at = self._clock()
        self.cache.invalidate_genres()
        self.event_bus.emit(Events.GENRE_CREATED, {"user_id": user_id, "genre_id": genre.id})
        logger.info(f"Created genre {genre.name} ({genre.id})")
        return genre

    async def update_genre(self, user_id: str, genre_id: str, name: Optional[str] = None,
                           color: Optional[str] = None) -> Genre:
        genres = await self.get_genres(user_id)
        genre = next((g for g in genres if g.id == genre_id), None)
        if genre is None:
            raise NotFoundError('genres', genre_id, 'Genre not found')

        update = {}
        if name is not None:
            name = name.strip()
            normalized = validate_genre_name(name)
            self._check_name(genres, normalized, genre_id)
            genre.name = name
            genre.normalized_name = normalized
            update["name"] = name
            update["normalizedName"] = normalized
        if color is not None:
            self._check_color(genres, color, genre_id)
            genre.color = color
            update["color"] = color
        if not update:
            return genre

        update["updatedAt"] = SERVER_TIMESTAMP
        try:
            await self.store.update(user_id, EntityKind.GENRES, genre_id, update)
        except StoreError as e:
            logger.error(f"Error updating genre: {e}")
            raise

        genre.updated_at = self._clock()
        self.cache.invalidate_genres()
        self.event_bus.emit(Events.GENRE_UPDATED, {"user_id": user_id, "genre_id": genre_id})
        return genre

    async def delete_genre(self, user_id: str, genre_id: str) -> int:
        """Delete a genre and strip it from every active book. Returns the number of books updated."""
        await self.get_genre(user_id, genre_id)

        docs = await self.store.query_by_field(user_id, EntityKind.BOOKS, "genres", genre_id)
        books = [Book.from_dict(doc, doc["id"]) for doc in docs]
        # Binned books keep the reference; restore strips it with a warning
        active = [b for b in books if not b.is_binned]

        batch = self.store.batch()
        for book in active:
            batch.stage_update(user_id, EntityKind.BOOKS, book.id, {
                "genres": [g for g in book.genres if g != genre_id],
                "updatedAt": SERVER_TIMESTAMP,
            })
        batch.stage_delete(user_id, EntityKind.GENRES, genre_id)
        try:
            await batch.commit()
        except StoreError as e:
            logger.error(f"Error deleting genre: {e}")
            raise

        self.cache.invalidate_genres()
        if active:
            self.cache.invalidate_books(user_id)
        self.event_bus.emit(Events.GENRE_DELETED, {"user_id": user_id, "genre_id": genre_id})
        logger.info(f"Deleted genre {genre_id}, updated {len(active)} books")
        return len(active)

    async def merge_genres(self, user_id: str, source_genre_id: str, target_genre_id: str) -> MergeResult:
        """Merge source into target; see MergeEngine."""
        return await self.merge_engine.merge(user_id, source_genre_id, target_genre_id, GenreMergePolicy())

    # ---------------------- Counters ----------------------
    async def update_book_counts(self, user_id: str, added_genre_ids: Iterable[str] = (),
                                 removed_genre_ids: Iterable[str] = ()) -> None:
        """Increment/decrement bookCount for the given genres (floored at zero)."""
        added = list(added_genre_ids)
        removed = list(removed_genre_ids)
        if not added and not removed:
            return

        genres = {g.id: g for g in await self.get_genres(user_id, force_refresh=True)}
        deltas: Counter = Counter()
        for genre_id in added:
            deltas[genre_id] += 1
        for genre_id in removed:
            deltas[genre_id] -= 1

        updates = []
        for genre_id, delta in deltas.items():
            genre = genres.get(genre_id)
            if genre is None or delta == 0:
                continue
            updates.append((genre_id, {
                "bookCount": max(0, genre.book_count + delta),
                "updatedAt": SERVER_TIMESTAMP,
            }))
        if not updates:
            return
        try:
            await commit_updates_in_chunks(self.store, user_id, EntityKind.GENRES, updates)
        except StoreError as e:
            logger.error(f"Error updating genre book counts: {e}")
            raise
        self.cache.invalidate_genres()
        self.event_bus.emit(Events.GENRE_UPDATED, {"user_id": user_id})

    async def recalculate_book_counts(self, user_id: str) -> RecountResult:
        """Recompute every genre's bookCount from a full scan of active books."""
        docs = await self.store.get_all(user_id, EntityKind.BOOKS)
        books = [Book.from_dict(doc, doc["id"]) for doc in docs]
        genres = await self.get_genres(user_id, force_refresh=True)
        counts = count_books_per_genre(books)

        updates = [
            (genre.id, {"bookCount": counts.get(genre.id, 0), "updatedAt": SERVER_TIMESTAMP})
            for genre in genres
            if counts.get(genre.id, 0) != genre.book_count
        ]
        if updates:
            try:
                await commit_updates_in_chunks(self.store, user_id, EntityKind.GENRES, updates)
            except StoreError as e:
                logger.error(f"Error recalculating genre book counts: {e}")
                raise
            self.event_bus.emit(Events.GENRE_UPDATED, {"user_id": user_id})
        self.cache.invalidate_genres()

        result = RecountResult(updated=len(updates), total_books=sum(1 for b in books if not b.is_binned))
        logger.info(f"Recalculated genre counts: {result.updated} updated, {result.total_books} active books")
        return result
