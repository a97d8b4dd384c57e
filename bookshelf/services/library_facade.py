"""
Library Services Facade

Composes the store, event bus, caches and every entity service for one
session, and exposes the whole-library operations (backup export/import, bin
loading, counter recount) that span several services.
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ..domain.models import Book, EntityKind, Series, now_utc
from ..domain.repositories import DocumentStore, HintStore
from .backup_codec import BackupDocument, encode_backup
from .bin_service import BIN_RETENTION_DAYS, BinService, BinView
from .book_service import BookService
from .cache_service import CacheService
from .event_bus import EventBus
from .genre_service import GenreService
from .import_service import ImportService, ImportSummary, ProgressCallback
from .merge_engine import MergeEngine
from .series_service import SeriesService
from .wishlist_service import WishlistService

logger = logging.getLogger(__name__)


class LibraryServices:
    """
    Facade that owns every service of a session.

    Services share one store, one event bus and one cache service; the clock
    and random source are injected so tests can pin time and colour picks.
    """

    def __init__(self, store: DocumentStore, event_bus: Optional[EventBus] = None,
                 clock: Optional[Callable[[], datetime]] = None, rng: Optional[random.Random] = None,
                 hints: Optional[HintStore] = None, cache_ttl_seconds: float = 300,
                 retention_days: int = BIN_RETENTION_DAYS, import_chunk_size: Optional[int] = None,
                 duplicate_check_limit: int = 200):
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.clock = clock or now_utc

        self.cache = CacheService(store, self.event_bus, cache_ttl_seconds, self.clock, hints)
        self.merge_engine = MergeEngine(store, self.cache, self.event_bus)
        self.genres = GenreService(store, self.cache, self.event_bus, self.merge_engine, self.clock, rng)
        self.series = SeriesService(store, self.cache, self.event_bus, self.merge_engine, self.clock)
        self.books = BookService(store, self.cache, self.event_bus, self.genres, self.series,
                                 self.clock, duplicate_check_limit)
        self.wishlist = WishlistService(store, self.cache, self.event_bus, self.clock)
        self.bin = BinService(store, self.cache, self.event_bus, self.genres, self.series,
                              self.clock, retention_days)
        self.importer = ImportService(store, self.cache, self.event_bus, self.genres, self.series,
                                      self.wishlist, self.clock, import_chunk_size)

    def start_session(self, user_id: str) -> bool:
        """Wire cache invalidation for the signed-in user; safe to call repeatedly."""
        return self.cache.init_cache_invalidation(user_id)

    def switch_user(self, previous_user_id: Optional[str], user_id: str) -> None:
        self.cache.switch_user(previous_user_id, user_id)

    # ---------------------- Backup ----------------------
    async def export_backup(self, user_id: str) -> Dict[str, Any]:
        """Snapshot the whole library, binned books and soft-deleted series included."""
        genres = await self.genres.get_genres(user_id, force_refresh=True)
        series_docs = await self.store.get_all(user_id, EntityKind.SERIES)
        book_docs = await self.store.get_all(user_id, EntityKind.BOOKS)
        wishlist = await self.wishlist.get_all(user_id, force_refresh=True)

        series = [Series.from_dict(d, d["id"]) for d in series_docs]
        books = [Book.from_dict(d, d["id"]) for d in book_docs]
        document = encode_backup(genres, series, books, wishlist, self.clock())
        logger.info(f"Exported backup for {user_id}: {len(document['books'])} books, "
                    f"{len(document['bin'])} binned, {len(document['wishlist'])} wishlist items")
        return document

    async def import_backup(self, user_id: str, raw: Union[str, bytes, Dict[str, Any], BackupDocument],
                            progress: Optional[ProgressCallback] = None) -> ImportSummary:
        return await self.importer.import_backup(user_id, raw, progress)

    # ---------------------- Maintenance ----------------------
    async def load_bin(self, user_id: str) -> BinView:
        return await self.bin.load_bin(user_id)

    async def recount(self, user_id: str) -> Dict[str, Any]:
        """Rebuild genre and series counters from the books themselves."""
        genre_result = await self.genres.recalculate_book_counts(user_id)
        series_result = await self.series.recalculate_book_counts(user_id)
        return {"genres": genre_result.to_dict(), "series": series_result.to_dict()}
