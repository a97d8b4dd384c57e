"""
Bookshelf library factory.

Builds a LibraryServices instance from a Config class: picks the document
store backend, the cache hint store and the log level.
"""

import logging
import os
import random
from datetime import datetime
from typing import Callable, Optional, Type

from config import Config

from .domain.repositories import DocumentStore, HintStore
from .infrastructure import JsonFileHintStore, MemoryDocumentStore
from .services import LibraryServices

logger = logging.getLogger(__name__)


def _create_store(config_class: Type[Config]) -> DocumentStore:
    backend = (config_class.STORE_BACKEND or 'kuzu').lower()
    if backend == 'memory':
        return MemoryDocumentStore(batch_limit=config_class.STORE_BATCH_LIMIT)
    if backend == 'kuzu':
        # Imported lazily so the memory backend works without the kuzu wheel
        from .infrastructure.kuzu_store import KuzuDocumentStore
        return KuzuDocumentStore(os.path.join(config_class.KUZU_DB_PATH, 'bookshelf.db'),
                                 batch_limit=config_class.STORE_BATCH_LIMIT)
    raise ValueError(f"Unknown STORE_BACKEND: {config_class.STORE_BACKEND}")


def create_library(config_class: Type[Config] = Config, store: Optional[DocumentStore] = None,
                   hints: Optional[HintStore] = None, clock: Optional[Callable[[], datetime]] = None,
                   rng: Optional[random.Random] = None, user_id: Optional[str] = None) -> LibraryServices:
    """Create the services for one session."""
    level = getattr(logging, str(config_class.LOG_LEVEL).upper(), logging.ERROR)
    logging.getLogger().setLevel(level)

    if store is None:
        store = _create_store(config_class)
    if hints is None and config_class.CACHE_HINTS_PATH:
        hints = JsonFileHintStore(config_class.CACHE_HINTS_PATH)

    library = LibraryServices(
        store,
        clock=clock,
        rng=rng,
        hints=hints,
        cache_ttl_seconds=config_class.CACHE_TTL_SECONDS,
        retention_days=config_class.BIN_RETENTION_DAYS,
        import_chunk_size=config_class.IMPORT_CHUNK_SIZE,
        duplicate_check_limit=config_class.DUPLICATE_CHECK_LIMIT,
    )
    library.start_session(user_id)
    logger.info(f"Library created with {type(store).__name__}")
    return library


__all__ = ['create_library', 'LibraryServices']
