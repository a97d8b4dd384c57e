"""
Import Service

Restores a backup into a user's library without duplicating anything already
there. The pipeline is strictly ordered because each phase consumes the id
remap tables of the ones before it:

    validate -> genres -> series -> books -> wishlist -> bin -> cleanup -> recount

Each chunk of writes is atomic, the import as a whole is not: a store failure
stops the pipeline with ImportAborted, whose summary lists what was already
committed. The wishlist cleanup is best-effort and only records failures.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..domain.errors import ImportAborted, PartialFailure, StoreError, ValidationError
from ..domain.models import Book, EntityKind, Genre, Series, WishlistItem, format_timestamp, now_utc
from ..domain.repositories import SERVER_TIMESTAMP, DocumentStore
from ..utils.normalization import book_match_keys, normalize_genre_name, normalize_series_name
from .backup_codec import BackupDocument, decode_backup
from .cache_service import CacheService
from .event_bus import EventBus, Events
from .genre_service import GenreService, is_valid_color, used_colors
from .series_service import SeriesService
from .wishlist_service import WishlistService, find_wishlist_duplicate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

PHASE_VALIDATE = 'validate'
PHASE_GENRES = 'genres'
PHASE_SERIES = 'series'
PHASE_BOOKS = 'books'
PHASE_WISHLIST = 'wishlist'
PHASE_BIN = 'bin'
PHASE_CLEANUP = 'cleanup'
PHASE_RECOUNT = 'recount'


def _plural(count: int, word: str, plural: Optional[str] = None) -> str:
    return f"{count} {word if count == 1 else (plural or word + 's')}"


@dataclass
class KindCounts:
    imported: int = 0
    skipped: int = 0
    skipped_owned: int = 0
    auto_removed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "skippedOwned": self.skipped_owned,
            "autoRemoved": self.auto_removed,
        }


@dataclass
class ImportSummary:
    """Per-kind outcome of an import. Rendered even when nothing changed."""
    genres: KindCounts = field(default_factory=KindCounts)
    series: KindCounts = field(default_factory=KindCounts)
    books: KindCounts = field(default_factory=KindCounts)
    wishlist: KindCounts = field(default_factory=KindCounts)
    bin: KindCounts = field(default_factory=KindCounts)
    failures: List[PartialFailure] = field(default_factory=list)
    aborted_phase: Optional[str] = None
    genre_recount: Optional[Any] = None
    series_recount: Optional[Any] = None

    @property
    def total_imported(self) -> int:
        return (self.genres.imported + self.series.imported + self.books.imported
                + self.wishlist.imported + self.bin.imported)

    @property
    def completed(self) -> bool:
        return self.aborted_phase is None

    def lines(self) -> List[str]:
        lines = []
        if self.books.imported:
            lines.append(f"{_plural(self.books.imported, 'book')} added to library")
        if self.genres.imported:
            lines.append(f"{_plural(self.genres.imported, 'genre')} created")
        if self.series.imported:
            lines.append(f"{self.series.imported} series created")
        if self.wishlist.imported:
            lines.append(f"{_plural(self.wishlist.imported, 'wishlist item')} added")
        if self.bin.imported:
            lines.append(f"{_plural(self.bin.imported, 'bin item')} restored")

        if self.books.skipped:
            lines.append(f"{_plural(self.books.skipped, 'duplicate book')} skipped")
        if self.genres.skipped:
            lines.append(f"{_plural(self.genres.skipped, 'existing genre')} skipped")
        if self.series.skipped:
            lines.append(f"{self.series.skipped} existing series skipped")
        if self.wishlist.skipped:
            lines.append(f"{_plural(self.wishlist.skipped, 'duplicate wishlist item')} skipped")
        if self.wishlist.skipped_owned:
            lines.append(f"{_plural(self.wishlist.skipped_owned, 'wishlist item')} skipped (already owned)")
        if self.bin.skipped:
            lines.append(f"{_plural(self.bin.skipped, 'duplicate bin item')} skipped")

        if self.wishlist.auto_removed:
            lines.append(f"{_plural(self.wishlist.auto_removed, 'wishlist item')} auto-removed (now owned)")

        if self.total_imported == 0:
            lines.append("No new items to import (all duplicates or already owned)")
        for failure in self.failures:
            lines.append(f"Warning: {failure.describe()}")
        if self.aborted_phase:
            lines.append(f"Import stopped during the {self.aborted_phase} step; earlier steps were saved")
        return lines

    def to_dict(self) -> Dict[str, Any]:
        return {
            "genres": self.genres.to_dict(),
            "series": self.series.to_dict(),
            "books": self.books.to_dict(),
            "wishlist": self.wishlist.to_dict(),
            "bin": self.bin.to_dict(),
            "failures": [f.describe() for f in self.failures],
            "abortedPhase": self.aborted_phase,
        }


class _ImportRun:
    """State shared by the phases of one import."""

    def __init__(self, user_id: str, document: BackupDocument, progress: Optional[ProgressCallback]):
        self.user_id = user_id
        self.document = document
        self.progress = progress
        self.summary = ImportSummary()
        self.genre_map: Dict[str, str] = {}
        self.series_map: Dict[str, str] = {}
        self.existing_book_keys: Set[str] = set()
        self.imported_book_keys: Set[str] = set()
        self.existing_wishlist: List[WishlistItem] = []

    def report(self, phase: str, done: int, total: int) -> None:
        if self.progress is None:
            return
        try:
            self.progress(phase, done, total)
        except Exception as e:
            logger.warning(f"Import progress callback failed: {e}")


class ImportService:
    """Import reconciliation engine."""

    def __init__(self, store: DocumentStore, cache: CacheService, event_bus: EventBus,
                 genre_service: GenreService, series_service: SeriesService,
                 wishlist_service: WishlistService, clock: Optional[Callable[[], datetime]] = None,
                 chunk_size: Optional[int] = None):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus
        self.genre_service = genre_service
        self.series_service = series_service
        self.wishlist_service = wishlist_service
        self._clock = clock or now_utc
        limit = store.batch_limit
        self.chunk_size = max(1, min(chunk_size or limit, limit))

    async def import_backup(self, user_id: str, raw: Union[str, bytes, Dict[str, Any], BackupDocument],
                            progress: Optional[ProgressCallback] = None) -> ImportSummary:
        """Import a backup; returns the summary, or raises ImportAborted carrying it."""
        document = raw if isinstance(raw, BackupDocument) else decode_backup(raw)
        if document.is_empty():
            raise ValidationError("Backup file is empty")

        run = _ImportRun(user_id, document, progress)
        logger.info(f"Importing backup v{document.version} for {user_id}: {document.counts()}")
        try:
            await self._phase(run, PHASE_GENRES, self._import_genres)
            await self._phase(run, PHASE_SERIES, self._import_series)
            await self._phase(run, PHASE_BOOKS, self._import_books)
            await self._phase(run, PHASE_WISHLIST, self._import_wishlist)
            await self._phase(run, PHASE_BIN, self._import_bin)
            await self._cleanup_wishlist(run)
            await self._phase(run, PHASE_RECOUNT, self._recount)
        finally:
            self.cache.invalidate_all(user_id)
            self.event_bus.emit(Events.IMPORT_COMPLETED, {"user_id": user_id, "summary": run.summary})

        logger.info(f"Import finished for {user_id}: {run.summary.to_dict()}")
        return run.summary

    async def _phase(self, run: _ImportRun, phase: str, step: Callable[[_ImportRun], Awaitable[None]]) -> None:
        try:
            await step(run)
        except StoreError as e:
            run.summary.aborted_phase = phase
            logger.error(f"Import aborted during {phase}: {e}")
            raise ImportAborted(phase, run.summary, f"Import failed during {phase}: {e}") from e

    # ---------------------- chunked writes ----------------------
    async def _create_in_chunks(self, run: _ImportRun, phase: str, kind: EntityKind,
                                docs: List[Dict[str, Any]], counts: KindCounts) -> None:
        total = len(docs)
        for start in range(0, total, self.chunk_size):
            chunk = docs[start:start + self.chunk_size]
            batch = self.store.batch()
            for doc in chunk:
                batch.stage_create(run.user_id, kind, doc)
            await batch.commit()
            counts.imported += len(chunk)
            run.report(phase, counts.imported, total)
            logger.debug(f"Import {phase}: {counts.imported}/{total}")

    def _remap_book(self, run: _ImportRun, book: Book) -> Dict[str, Any]:
        """Book document with references rewritten to this library's ids."""
        doc = book.to_dict()
        doc["genres"] = [run.genre_map[g] for g in book.genres if g in run.genre_map]
        series_id = run.series_map.get(book.series_id) if book.series_id else None
        doc["seriesId"] = series_id
        if series_id is None:
            doc["seriesPosition"] = None
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        return doc

    # ---------------------- phases ----------------------
    async def _import_genres(self, run: _ImportRun) -> None:
        if not run.document.genres:
            return
        existing: List[Genre] = await self.genre_service.get_genres(run.user_id, force_refresh=True)
        by_name = {g.normalized_name: g for g in existing}
        counts = run.summary.genres
        for entry in run.document.genres:
            normalized = normalize_genre_name(entry.genre.name)
            match = by_name.get(normalized)
            if match is None:
                color = entry.genre.color
                if not is_valid_color(color) or color.lower() in used_colors(existing):
                    color = None
                match = await self.genre_service.create_genre(run.user_id, entry.genre.name, color)
                existing.append(match)
                by_name[normalized] = match
                counts.imported += 1
            else:
                counts.skipped += 1
            if entry.export_id:
                run.genre_map[entry.export_id] = match.id
        run.report(PHASE_GENRES, len(run.document.genres), len(run.document.genres))

    async def _import_series(self, run: _ImportRun) -> None:
        if not run.document.series:
            return
        docs = await self.store.get_all(run.user_id, EntityKind.SERIES)
        all_series = [Series.from_dict(d, d["id"]) for d in docs]
        active = {s.normalized_name: s for s in all_series if not s.is_deleted}
        deleted = {s.normalized_name: s for s in all_series if s.is_deleted}
        counts = run.summary.series

        for entry in run.document.series:
            incoming = entry.series
            normalized = normalize_series_name(incoming.name)
            match = active.get(normalized)
            if match is None and incoming.is_deleted:
                match = deleted.get(normalized)
            if match is None:
                match = await self.series_service.create_series(
                    run.user_id, incoming.name, incoming.description, incoming.total_books
                )
                if incoming.expected_books:
                    match = await self.series_service.update_series(
                        run.user_id, match.id, expected_books=incoming.expected_books
                    )
                if incoming.is_deleted:
                    # Keep the original purge clock
                    await self.store.update(run.user_id, EntityKind.SERIES, match.id, {
                        "deletedAt": format_timestamp(incoming.deleted_at),
                    })
                    deleted[normalized] = match
                else:
                    active[normalized] = match
                counts.imported += 1
            else:
                counts.skipped += 1
            if entry.export_id:
                run.series_map[entry.export_id] = match.id
        self.cache.invalidate_series()
        run.report(PHASE_SERIES, len(run.document.series), len(run.document.series))

    async def _import_books(self, run: _ImportRun) -> None:
        existing = await self.cache.get_books(run.user_id, force_refresh=True)
        for book in existing:
            run.existing_book_keys |= book_match_keys(book.isbn, book.title, book.author)

        counts = run.summary.books
        seen = set(run.existing_book_keys)
        to_insert = []
        for book in run.document.books:
            keys = book_match_keys(book.isbn, book.title, book.author)
            if keys & seen:
                counts.skipped += 1
                continue
            seen |= keys
            run.imported_book_keys |= keys
            book.deleted_at = None
            to_insert.append(self._remap_book(run, book))
        await self._create_in_chunks(run, PHASE_BOOKS, EntityKind.BOOKS, to_insert, counts)

    async def _import_wishlist(self, run: _ImportRun) -> None:
        run.existing_wishlist = await self.wishlist_service.get_all(run.user_id, force_refresh=True)
        if not run.document.wishlist:
            return
        owned = run.existing_book_keys | run.imported_book_keys
        counts = run.summary.wishlist
        accepted: List[WishlistItem] = []
        to_insert = []
        for item in run.document.wishlist:
            if find_wishlist_duplicate(run.existing_wishlist + accepted, item.isbn, item.title, item.author):
                counts.skipped += 1
                continue
            if book_match_keys(item.isbn, item.title, item.author) & owned:
                counts.skipped_owned += 1
                continue
            accepted.append(item)
            doc = item.to_dict()
            doc["createdAt"] = SERVER_TIMESTAMP
            doc["updatedAt"] = SERVER_TIMESTAMP
            to_insert.append(doc)
        await self._create_in_chunks(run, PHASE_WISHLIST, EntityKind.WISHLIST, to_insert, counts)

    async def _import_bin(self, run: _ImportRun) -> None:
        if not run.document.bin:
            return
        docs = await self.store.get_all(run.user_id, EntityKind.BOOKS)
        seen: Set[str] = set()
        for doc in docs:
            seen |= book_match_keys(doc.get("isbn"), doc.get("title"), doc.get("author"))

        counts = run.summary.bin
        now = self._clock()
        to_insert = []
        for book in run.document.bin:
            keys = book_match_keys(book.isbn, book.title, book.author)
            if keys & seen:
                counts.skipped += 1
                continue
            seen |= keys
            # Never reset the purge clock to a full retention window
            book.deleted_at = book.deleted_at or now
            to_insert.append(self._remap_book(run, book))
        await self._create_in_chunks(run, PHASE_BIN, EntityKind.BOOKS, to_insert, counts)

    async def _cleanup_wishlist(self, run: _ImportRun) -> None:
        """Remove pre-existing wishlist items the import just put in the library."""
        if not run.imported_book_keys:
            return
        matches = [item for item in run.existing_wishlist
                   if book_match_keys(item.isbn, item.title, item.author) & run.imported_book_keys]
        for index, item in enumerate(matches, start=1):
            try:
                await self.wishlist_service.remove(run.user_id, item.id)
                run.summary.wishlist.auto_removed += 1
            except StoreError as e:
                logger.warning(f"Failed to auto-remove wishlist item {item.id}: {e}")
                run.summary.failures.append(PartialFailure(PHASE_CLEANUP, item.id, str(e)))
            run.report(PHASE_CLEANUP, index, len(matches))

    async def _recount(self, run: _ImportRun) -> None:
        summary = run.summary
        if not (summary.genres.imported or summary.series.imported or summary.books.imported):
            return
        summary.genre_recount = await self.genre_service.recalculate_book_counts(run.user_id)
        summary.series_recount = await self.series_service.recalculate_book_counts(run.user_id)
