"""
Bookshelf Services Package

Service classes, one per entity, composed by LibraryServices:
- CacheService: per-user entity caches and their invalidation
- GenreService / SeriesService: labels, colours, merges and counters
- BookService / WishlistService / BinService: book lifecycle
- ImportService: backup reconciliation
"""

from .async_helper import run_async
from .backup_codec import BackupDocument, decode_backup, encode_backup
from .bin_service import BinService, BinView
from .book_service import BookService, DuplicateCheckResult
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .genre_service import GenreService
from .import_service import ImportService, ImportSummary
from .library_facade import LibraryServices
from .merge_engine import MergeEngine, MergeResult
from .series_service import SeriesService
from .wishlist_service import WishlistService

__all__ = [
    'run_async',
    'BackupDocument', 'decode_backup', 'encode_backup',
    'BinService', 'BinView',
    'BookService', 'DuplicateCheckResult',
    'CacheService',
    'EventBus', 'Events',
    'GenreService',
    'ImportService', 'ImportSummary',
    'LibraryServices',
    'MergeEngine', 'MergeResult',
    'SeriesService',
    'WishlistService',
]
