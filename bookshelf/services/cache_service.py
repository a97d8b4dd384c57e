"""
Cache Service

Per-session, per-user in-memory projections of the genre, series, wishlist and
active-book collections. Each cache is tagged with the user it was loaded for
and expires after the TTL; mutations invalidate through the event bus.

Books additionally persist a non-authoritative hint through a HintStore so a
fresh process can skip one full load. Every hint access is wrapped: a failing
hint store behaves like an empty one.
"""

import asyncio
import copy
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from ..domain.models import Book, EntityKind, Genre, Series, WishlistItem, now_utc
from ..domain.repositories import DocumentStore, HintStore
from ..utils.simple_cache import EntityCache
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)

BOOKS_HINT_VERSION = 1
BOOKS_HINT_KEY = f"bookshelf_books_cache_v{BOOKS_HINT_VERSION}"


class CacheService:
    """Holds every entity cache for one session."""

    def __init__(self, store: DocumentStore, event_bus: EventBus, ttl_seconds: float = 300,
                 clock: Optional[Callable[[], datetime]] = None, hints: Optional[HintStore] = None):
        self.store = store
        self.event_bus = event_bus
        self.ttl_seconds = ttl_seconds
        self._clock = clock or now_utc
        self.hints = hints
        self._invalidation_initialized = False
        self._current_user_id: Optional[str] = None

        def seconds() -> float:
            return self._clock().timestamp()

        self.genres: EntityCache[List[Genre]] = EntityCache('genres', ttl_seconds, seconds)
        self.series: EntityCache[List[Series]] = EntityCache('series', ttl_seconds, seconds)
        self.wishlist: EntityCache[List[WishlistItem]] = EntityCache('wishlist', ttl_seconds, seconds)
        self.books: EntityCache[List[Book]] = EntityCache('books', ttl_seconds, seconds)

    # ---------------------- invalidation wiring ----------------------
    def init_cache_invalidation(self, user_id: Optional[str] = None) -> bool:
        """Subscribe cache invalidation to entity events. Runs at most once per session.

        Returns True when the subscriptions were registered by this call.
        """
        if user_id:
            self._current_user_id = user_id
        if self._invalidation_initialized:
            return False

        for event in (Events.BOOK_SAVED, Events.BOOK_DELETED, Events.BOOK_RESTORED, Events.IMPORT_COMPLETED):
            self.event_bus.on(event, self._on_books_changed)
        for event in (Events.GENRE_CREATED, Events.GENRE_UPDATED, Events.GENRE_DELETED):
            self.event_bus.on(event, self._on_genres_changed)
        for event in (Events.SERIES_CREATED, Events.SERIES_UPDATED, Events.SERIES_DELETED):
            self.event_bus.on(event, self._on_series_changed)
        self.event_bus.on(Events.WISHLIST_CHANGED, self._on_wishlist_changed)

        self._invalidation_initialized = True
        logger.debug("Cache invalidation listeners registered")
        return True

    def _event_user(self, data: Any) -> Optional[str]:
        if isinstance(data, dict) and data.get('user_id'):
            return data['user_id']
        return self._current_user_id

    def _on_books_changed(self, data: Any) -> None:
        self.invalidate_books(self._event_user(data))

    def _on_genres_changed(self, data: Any) -> None:
        self.invalidate_genres()

    def _on_series_changed(self, data: Any) -> None:
        self.invalidate_series()

    def _on_wishlist_changed(self, data: Any) -> None:
        self.invalidate_wishlist()

    # ---------------------- invalidation ----------------------
    def invalidate_genres(self) -> None:
        self.genres.invalidate()

    def invalidate_series(self) -> None:
        self.series.invalidate()

    def invalidate_wishlist(self) -> None:
        self.wishlist.invalidate()

    def invalidate_books(self, user_id: Optional[str] = None) -> None:
        self.books.invalidate()
        if user_id:
            self._remove_hint(self._books_hint_key(user_id))

    def invalidate_all(self, user_id: Optional[str] = None) -> None:
        self.invalidate_books(user_id)
        self.invalidate_genres()
        self.invalidate_series()
        self.invalidate_wishlist()

    def clear_all(self, user_id: Optional[str] = None) -> None:
        """Drop every cache. Must be called before switching the active user."""
        self.invalidate_all(user_id)
        self._current_user_id = None
        logger.debug("All caches cleared")

    def switch_user(self, previous_user_id: Optional[str], user_id: str) -> None:
        self.clear_all(previous_user_id)
        self._current_user_id = user_id

    # ---------------------- loads ----------------------
    async def _cached(self, cache: EntityCache, user_id: str, force_refresh: bool,
                      fetch: Callable[[], Awaitable[list]]) -> list:
        if not force_refresh:
            payload = cache.get(user_id)
            if payload is not None:
                logger.debug(f"{cache.name} cache hit for {user_id}")
                return copy.deepcopy(payload)
        logger.debug(f"{cache.name} cache miss for {user_id}")
        payload = await fetch()
        cache.set(user_id, payload)
        return copy.deepcopy(payload)

    async def get_genres(self, user_id: str, force_refresh: bool = False) -> List[Genre]:
        """All genres of the user, sorted by name."""
        async def fetch():
            docs = await self.store.get_all(user_id, EntityKind.GENRES)
            genres = [Genre.from_dict(doc, doc["id"]) for doc in docs]
            return sorted(genres, key=lambda g: g.name.lower())
        return await self._cached(self.genres, user_id, force_refresh, fetch)

    async def get_series(self, user_id: str, force_refresh: bool = False) -> List[Series]:
        """Active (not soft-deleted) series, sorted by name."""
        async def fetch():
            docs = await self.store.get_all(user_id, EntityKind.SERIES)
            series = [Series.from_dict(doc, doc["id"]) for doc in docs]
            return sorted((s for s in series if not s.is_deleted), key=lambda s: s.name.lower())
        return await self._cached(self.series, user_id, force_refresh, fetch)

    async def get_wishlist(self, user_id: str, force_refresh: bool = False) -> List[WishlistItem]:
        """Wishlist items, newest first."""
        async def fetch():
            docs = await self.store.get_all(user_id, EntityKind.WISHLIST)
            items = [WishlistItem.from_dict(doc, doc["id"]) for doc in docs]
            return sorted(items, key=lambda i: i.created_at.timestamp() if i.created_at else 0, reverse=True)
        return await self._cached(self.wishlist, user_id, force_refresh, fetch)

    async def get_books(self, user_id: str, force_refresh: bool = False) -> List[Book]:
        """Active (not binned) books."""
        async def fetch():
            if not force_refresh:
                hinted = self._read_books_hint(user_id)
                if hinted is not None:
                    logger.debug(f"books loaded from cache hint for {user_id}")
                    return hinted
            docs = await self.store.get_all(user_id, EntityKind.BOOKS)
            books = [Book.from_dict(doc, doc["id"]) for doc in docs]
            active = [b for b in books if not b.is_binned]
            self._write_books_hint(user_id, active)
            return active
        return await self._cached(self.books, user_id, force_refresh, fetch)

    async def load_genres_and_series(self, user_id: str,
                                     force_refresh: bool = False) -> Tuple[List[Genre], List[Series]]:
        """Load both lookup caches concurrently (disjoint collections)."""
        genres, series = await asyncio.gather(
            self.get_genres(user_id, force_refresh),
            self.get_series(user_id, force_refresh),
        )
        return genres, series

    # ---------------------- hints ----------------------
    @staticmethod
    def _books_hint_key(user_id: str) -> str:
        return f"{BOOKS_HINT_KEY}_{user_id}"

    def _read_books_hint(self, user_id: str) -> Optional[List[Book]]:
        if self.hints is None:
            return None
        try:
            raw = self.hints.get(self._books_hint_key(user_id))
            if not raw:
                return None
            hint = json.loads(raw)
            age = self._clock().timestamp() - float(hint["fetchedAt"])
            if age < 0 or age >= self.ttl_seconds:
                return None
            return [Book.from_dict(doc, doc.get("id")) for doc in hint["books"]]
        except Exception as e:
            logger.warning(f"Ignoring unreadable books cache hint: {e}")
            return None

    def _write_books_hint(self, user_id: str, books: List[Book]) -> None:
        if self.hints is None:
            return
        try:
            payload = {
                "fetchedAt": self._clock().timestamp(),
                "books": [b.to_dict(include_id=True) for b in books],
            }
            self.hints.set(self._books_hint_key(user_id), json.dumps(payload))
        except Exception as e:
            logger.warning(f"Could not persist books cache hint: {e}")

    def _remove_hint(self, key: str) -> None:
        if self.hints is None:
            return
        try:
            self.hints.remove(key)
        except Exception as e:
            logger.warning(f"Could not remove cache hint {key}: {e}")
