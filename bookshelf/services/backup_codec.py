"""
Backup Codec

Reads and writes the JSON backup document:

    {
      "version": 2,
      "exportedAt": "<ISO-8601>",
      "genres":   [{...genre fields, "_exportId": "<old id>"}],
      "series":   [{...series fields, "_exportId": "<old id>"}],
      "books":    [{...active book fields, no id}],
      "wishlist": [{...wishlist fields, no id}],
      "bin":      [{...binned book fields, no id, deletedAt kept}]
    }

Version 1 files predate series and the bin; their missing sections read as
empty. Everything is validated while decoding so a bad file is rejected
before the import touches the store.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..domain.errors import ValidationError
from ..domain.models import MAX_GENRE_NAME_LENGTH, Book, Genre, Series, WishlistItem, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

BACKUP_VERSION = 2
SUPPORTED_VERSIONS = (1, 2)
EXPORT_ID_KEY = "_exportId"

# Derived search keys some book documents carry; never exported
_TRANSIENT_BOOK_KEYS = ("id", "_normalizedTitle", "_normalizedAuthor")


@dataclass
class ExportedGenre:
    export_id: Optional[str]
    genre: Genre


@dataclass
class ExportedSeries:
    export_id: Optional[str]
    series: Series


@dataclass
class BackupDocument:
    """A decoded backup, every section typed."""
    version: int = BACKUP_VERSION
    exported_at: Optional[datetime] = None
    genres: List[ExportedGenre] = field(default_factory=list)
    series: List[ExportedSeries] = field(default_factory=list)
    books: List[Book] = field(default_factory=list)
    wishlist: List[WishlistItem] = field(default_factory=list)
    bin: List[Book] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.genres or self.series or self.books or self.wishlist or self.bin)

    def counts(self) -> Dict[str, int]:
        return {
            "genres": len(self.genres),
            "series": len(self.series),
            "books": len(self.books),
            "wishlist": len(self.wishlist),
            "bin": len(self.bin),
        }


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _book_entry(book: Book) -> Dict[str, Any]:
    doc = book.to_dict()
    for key in _TRANSIENT_BOOK_KEYS:
        doc.pop(key, None)
    return doc


def _tagged(doc: Dict[str, Any], export_id: Optional[str]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("id", None)
    doc[EXPORT_ID_KEY] = export_id
    return doc


def encode_backup(genres: List[Genre], series: List[Series], books: List[Book],
                  wishlist: List[WishlistItem], exported_at: datetime) -> Dict[str, Any]:
    """Build a version 2 backup document.

    ``books`` holds every book; active ones land in ``books`` and binned ones
    in ``bin``. Genres and series are tagged with their id so the import can
    remap references.
    """
    active = [b for b in books if not b.is_binned]
    binned = [b for b in books if b.is_binned]
    if not (genres or series or active or binned or wishlist):
        raise ValidationError("No data to export")

    return {
        "version": BACKUP_VERSION,
        "exportedAt": format_timestamp(exported_at),
        "genres": [_tagged(g.to_dict(), g.id) for g in genres],
        "series": [_tagged(s.to_dict(), s.id) for s in series],
        "books": [_book_entry(b) for b in active],
        "wishlist": [{k: v for k, v in item.to_dict().items() if k != "id"} for item in wishlist],
        "bin": [_book_entry(b) for b in binned],
    }


def dumps(document: Dict[str, Any]) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)


def backup_filename(exported_at: datetime) -> str:
    return f"bookshelf-backup-{exported_at.date().isoformat()}.json"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _section(data: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    value = data.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Backup section '{name}' must be a list")
    return value


def _entry_error(section: str, index: int, error: ValidationError) -> ValidationError:
    return ValidationError(f"Invalid entry {index + 1} in '{section}': {error}")


def _export_id(entry: Dict[str, Any]) -> Optional[str]:
    value = entry.get(EXPORT_ID_KEY)
    return str(value) if value not in (None, '') else None


def _without(entry: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in keys}


def decode_backup(raw: Union[str, bytes, Dict[str, Any]]) -> BackupDocument:
    """Parse and validate a backup. Raises ValidationError on anything malformed."""
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ValidationError("Invalid JSON file") from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise ValidationError("Unrecognized backup format")

    version = data.get("version")
    if isinstance(version, bool) or version not in SUPPORTED_VERSIONS:
        raise ValidationError("Unrecognized backup format")

    document = BackupDocument(version=version)
    try:
        document.exported_at = parse_timestamp(data.get("exportedAt"))
    except ValidationError:
        logger.warning("Backup has an unreadable exportedAt; ignoring it")

    genres = _section(data, "genres")
    books = _section(data, "books")
    wishlist = _section(data, "wishlist")
    # Version 1 had no series or bin; whatever a v1 file carries there is ignored
    series = _section(data, "series") if version >= 2 else []
    binned = _section(data, "bin") if version >= 2 else []

    for index, entry in enumerate(genres):
        try:
            if not isinstance(entry, dict):
                raise ValidationError("Genre entries must be objects")
            genre = Genre.from_dict(_without(entry, "id", EXPORT_ID_KEY))
            if len(genre.name.strip()) > MAX_GENRE_NAME_LENGTH:
                raise ValidationError(f"Genre name must be {MAX_GENRE_NAME_LENGTH} characters or less")
            document.genres.append(ExportedGenre(_export_id(entry), genre))
        except ValidationError as e:
            raise _entry_error("genres", index, e) from e

    for index, entry in enumerate(series):
        try:
            if not isinstance(entry, dict):
                raise ValidationError("Series entries must be objects")
            s = Series.from_dict(_without(entry, "id", EXPORT_ID_KEY))
            document.series.append(ExportedSeries(_export_id(entry), s))
        except ValidationError as e:
            raise _entry_error("series", index, e) from e

    for section, entries, target in (("books", books, document.books), ("bin", binned, document.bin)):
        for index, entry in enumerate(entries):
            try:
                if not isinstance(entry, dict):
                    raise ValidationError("Book entries must be objects")
                book = Book.from_dict(_without(entry, *_TRANSIENT_BOOK_KEYS))
                if not book.title:
                    raise ValidationError("Title is required")
                target.append(book)
            except ValidationError as e:
                raise _entry_error(section, index, e) from e

    for index, entry in enumerate(wishlist):
        try:
            document.wishlist.append(WishlistItem.from_dict(_without(entry, "id") if isinstance(entry, dict) else entry))
        except ValidationError as e:
            raise _entry_error("wishlist", index, e) from e

    logger.debug(f"Decoded backup v{version}: {document.counts()}")
    return document
