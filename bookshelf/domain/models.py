"""
Domain models for the library core.

These models represent the core business entities independent of persistence concerns.
Documents in the store use camelCase keys (the backup file format shares them);
``to_dict``/``from_dict`` are the schema boundary between the two worlds and
reject malformed documents with ValidationError.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
import re

from .errors import ValidationError
from ..utils.normalization import normalize_genre_name, normalize_series_name, clean_isbn


MAX_BOOK_IMAGES = 10
MAX_GENRE_NAME_LENGTH = 50
MAX_RATING = 5
WISHLIST_PRIORITIES = ('high', 'medium', 'low')

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ISBN_RE = re.compile(r'^(\d{9}[\dX]|\d{13})$')


def now_utc() -> datetime:
    """Timezone-aware UTC now for default timestamps (avoid datetime.utcnow deprecation)."""
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    """Epoch milliseconds for an aware datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_millis(value: float) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce the timestamp shapes found in documents and backups to an aware datetime.

    Accepts datetimes, epoch milliseconds, ISO-8601 strings and
    ``{"seconds": ..., "nanoseconds": ...}`` maps written by older exports.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return from_millis(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, dict) and 'seconds' in value:
        seconds = value.get('seconds') or 0
        nanos = value.get('nanoseconds') or 0
        return _EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)
    raise ValidationError(f"Invalid timestamp: {value!r}")


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EntityKind(Enum):
    """Collections held per user in the document store."""
    BOOKS = "books"
    GENRES = "genres"
    SERIES = "series"
    WISHLIST = "wishlist"


class ExpectedBookSource(Enum):
    API = "api"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Field coercion helpers (schema boundary)
# ---------------------------------------------------------------------------

def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _opt_number(data: Dict[str, Any], key: str, integer: bool = False):
    value = data.get(key)
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Field '{key}' must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Field '{key}' must be a number") from e
    if integer:
        return int(number)
    return int(number) if number.is_integer() else number


def _str_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key) or []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"Field '{key}' must be a list")
    return [str(v) for v in value if v]


def _unique(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _drop_none(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if v is not None}


# ---------------------------------------------------------------------------
# Book and its parts
# ---------------------------------------------------------------------------

@dataclass
class ReadRecord:
    """One read-through of a book. The last unfinished record is the current read."""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return bool(self.finished_at)

    def to_dict(self) -> Dict[str, Any]:
        return {"startedAt": self.started_at, "finishedAt": self.finished_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReadRecord':
        if not isinstance(data, dict):
            raise ValidationError("Read entries must be objects")
        return cls(started_at=_opt_str(data, "startedAt"), finished_at=_opt_str(data, "finishedAt"))


@dataclass
class BookImage:
    """User-uploaded image metadata attached to a book."""
    id: str
    url: str
    storage_path: str
    is_primary: bool = False
    caption: Optional[str] = None
    uploaded_at: Optional[int] = None  # epoch ms
    size_bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "url": self.url,
            "storagePath": self.storage_path,
            "isPrimary": self.is_primary,
            "caption": self.caption,
            "uploadedAt": self.uploaded_at,
            "sizeBytes": self.size_bytes,
            "width": self.width,
            "height": self.height,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BookImage':
        if not isinstance(data, dict):
            raise ValidationError("Image entries must be objects")
        image_id = _opt_str(data, "id")
        url = _opt_str(data, "url")
        storage_path = _opt_str(data, "storagePath")
        if not image_id or not url or not storage_path:
            raise ValidationError("Images need an id, url and storagePath")
        caption = _opt_str(data, "caption")
        if caption and len(caption) > 200:
            raise ValidationError("Caption must be 200 characters or less")
        return cls(
            id=image_id,
            url=url,
            storage_path=storage_path,
            is_primary=bool(data.get("isPrimary", False)),
            caption=caption,
            uploaded_at=_opt_number(data, "uploadedAt", integer=True),
            size_bytes=_opt_number(data, "sizeBytes", integer=True),
            width=_opt_number(data, "width", integer=True),
            height=_opt_number(data, "height", integer=True),
        )


@dataclass
class BookCovers:
    """Cover candidates handed over by the metadata lookups."""
    google_books: Optional[str] = None
    open_library: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({"googleBooks": self.google_books, "openLibrary": self.open_library})

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'BookCovers':
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("Field 'covers' must be an object")
        return cls(google_books=_opt_str(data, "googleBooks"), open_library=_opt_str(data, "openLibrary"))


# Keys handled explicitly by Book; anything else in a document is carried through untouched
_BOOK_FIELDS = {
    "id", "title", "author", "isbn", "genres", "seriesId", "seriesPosition", "rating",
    "notes", "reads", "images", "coverImageUrl", "covers", "publisher", "publishedDate",
    "physicalFormat", "pageCount", "deletedAt", "createdAt", "updatedAt",
    "_normalizedTitle", "_normalizedAuthor",
}


@dataclass
class Book:
    """Book domain model (one per user library entry)."""
    id: Optional[str] = None
    title: str = ""
    author: Optional[str] = None
    isbn: Optional[str] = None
    genres: List[str] = field(default_factory=list)  # genre ids, set semantics
    series_id: Optional[str] = None
    series_position: Optional[float] = None
    rating: Optional[int] = None
    notes: Optional[str] = None
    reads: List[ReadRecord] = field(default_factory=list)
    images: List[BookImage] = field(default_factory=list)
    cover_image_url: Optional[str] = None
    covers: BookCovers = field(default_factory=BookCovers)
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    physical_format: Optional[str] = None
    page_count: Optional[int] = None
    deleted_at: Optional[datetime] = None  # soft-delete marker
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.genres = _unique(list(self.genres))
        if self.isbn:
            self.isbn = clean_isbn(self.isbn) or None

    @property
    def is_binned(self) -> bool:
        return self.deleted_at is not None

    @property
    def current_read(self) -> Optional[ReadRecord]:
        if self.reads and not self.reads[-1].is_finished:
            return self.reads[-1]
        return None

    @property
    def primary_image(self) -> Optional[BookImage]:
        return next((img for img in self.images if img.is_primary), None)

    def validate(self) -> None:
        """Raise ValidationError when the book breaks an entity invariant."""
        if not self.title or not self.title.strip():
            raise ValidationError("Title is required")
        if self.isbn and not _ISBN_RE.match(self.isbn):
            raise ValidationError("ISBN must be 10 or 13 digits")
        if self.rating is not None and not 0 <= self.rating <= MAX_RATING:
            raise ValidationError(f"Rating must be between 0 and {MAX_RATING}")
        if len(self.images) > MAX_BOOK_IMAGES:
            raise ValidationError(f"Maximum {MAX_BOOK_IMAGES} images per book")
        if sum(1 for img in self.images if img.is_primary) > 1:
            raise ValidationError("Only one image can be marked as primary")
        if self.series_position is not None and self.series_position <= 0:
            raise ValidationError("Series position must be a positive number")
        if self.page_count is not None and self.page_count <= 0:
            raise ValidationError("Page count must be a positive number")

    def to_dict(self, include_id: bool = False) -> Dict[str, Any]:
        """Serialize to a store/backup document (camelCase)."""
        doc: Dict[str, Any] = dict(self.extra)
        doc.update({
            "title": self.title,
            "author": self.author or "",
            "isbn": self.isbn or "",
            "genres": list(self.genres),
            "seriesId": self.series_id,
            "seriesPosition": self.series_position,
            "rating": self.rating,
            "notes": self.notes or "",
            "reads": [r.to_dict() for r in self.reads],
            "images": [img.to_dict() for img in self.images],
            "coverImageUrl": self.cover_image_url or "",
            "covers": self.covers.to_dict(),
            "publisher": self.publisher or "",
            "publishedDate": self.published_date or "",
            "physicalFormat": self.physical_format or "",
            "pageCount": self.page_count,
            "deletedAt": to_millis(self.deleted_at) if self.deleted_at else None,
        })
        if self.created_at:
            doc["createdAt"] = format_timestamp(self.created_at)
        if self.updated_at:
            doc["updatedAt"] = format_timestamp(self.updated_at)
        if include_id and self.id:
            doc["id"] = self.id
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'Book':
        """Build a Book from a store/backup document, validating field shapes."""
        if not isinstance(data, dict):
            raise ValidationError("Book documents must be objects")
        reads_raw = data.get("reads") or []
        images_raw = data.get("images") or []
        if not isinstance(reads_raw, list) or not isinstance(images_raw, list):
            raise ValidationError("Fields 'reads' and 'images' must be lists")
        rating = _opt_number(data, "rating", integer=True)
        book = cls(
            id=doc_id or _opt_str(data, "id"),
            title=_opt_str(data, "title") or "",
            author=_opt_str(data, "author"),
            isbn=_opt_str(data, "isbn"),
            genres=_str_list(data, "genres"),
            series_id=_opt_str(data, "seriesId"),
            series_position=_opt_number(data, "seriesPosition"),
            rating=rating or None,  # 0 means unrated
            notes=_opt_str(data, "notes"),
            reads=[ReadRecord.from_dict(r) for r in reads_raw],
            images=[BookImage.from_dict(i) for i in images_raw],
            cover_image_url=_opt_str(data, "coverImageUrl"),
            covers=BookCovers.from_dict(data.get("covers")),
            publisher=_opt_str(data, "publisher"),
            published_date=_opt_str(data, "publishedDate"),
            physical_format=_opt_str(data, "physicalFormat"),
            page_count=_opt_number(data, "pageCount", integer=True),
            deleted_at=parse_timestamp(data.get("deletedAt")),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            extra={k: v for k, v in data.items() if k not in _BOOK_FIELDS},
        )
        return book


# ---------------------------------------------------------------------------
# Genre
# ---------------------------------------------------------------------------

@dataclass
class Genre:
    """Genre label with a palette colour and a materialized book count."""
    id: Optional[str] = None
    name: str = ""
    normalized_name: str = ""
    color: str = ""
    book_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.normalized_name and self.name:
            self.normalized_name = normalize_genre_name(self.name)

    def to_dict(self, include_id: bool = False) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "name": self.name,
            "normalizedName": self.normalized_name,
            "color": self.color,
            "bookCount": self.book_count,
        }
        if self.created_at:
            doc["createdAt"] = format_timestamp(self.created_at)
        if self.updated_at:
            doc["updatedAt"] = format_timestamp(self.updated_at)
        if include_id and self.id:
            doc["id"] = self.id
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'Genre':
        if not isinstance(data, dict):
            raise ValidationError("Genre documents must be objects")
        name = _opt_str(data, "name")
        if not name:
            raise ValidationError("Genre name is required")
        return cls(
            id=doc_id or _opt_str(data, "id"),
            name=name,
            normalized_name=_opt_str(data, "normalizedName") or normalize_genre_name(name),
            color=_opt_str(data, "color") or "",
            book_count=max(0, _opt_number(data, "bookCount", integer=True) or 0),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------

@dataclass
class ExpectedBook:
    """A series entry the user does not own yet."""
    title: str
    isbn: Optional[str] = None
    position: Optional[float] = None
    source: ExpectedBookSource = ExpectedBookSource.MANUAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "isbn": self.isbn,
            "position": self.position,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExpectedBook':
        if not isinstance(data, dict):
            raise ValidationError("Expected book entries must be objects")
        title = _opt_str(data, "title")
        if not title:
            raise ValidationError("Expected books need a title")
        try:
            source = ExpectedBookSource(data.get("source") or "manual")
        except ValueError as e:
            raise ValidationError(f"Unknown expected book source: {data.get('source')!r}") from e
        return cls(
            title=title,
            isbn=_opt_str(data, "isbn"),
            position=_opt_number(data, "position") or None,
            source=source,
        )


def sort_expected_books(books: List[ExpectedBook]) -> List[ExpectedBook]:
    """Order by position, entries without a position last (stable)."""
    return sorted(books, key=lambda b: (b.position is None, b.position or 0))


@dataclass
class Series:
    """Series domain model."""
    id: Optional[str] = None
    name: str = ""
    normalized_name: str = ""
    description: Optional[str] = None
    total_books: Optional[int] = None  # None = unknown
    expected_books: List[ExpectedBook] = field(default_factory=list)
    book_count: int = 0
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.normalized_name and self.name:
            self.normalized_name = normalize_series_name(self.name)
        if self.total_books is not None and self.total_books <= 0:
            self.total_books = None
        self.expected_books = sort_expected_books(self.expected_books)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self, include_id: bool = False) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "name": self.name,
            "normalizedName": self.normalized_name,
            "description": self.description,
            "totalBooks": self.total_books,
            "expectedBooks": [b.to_dict() for b in self.expected_books],
            "bookCount": self.book_count,
            "deletedAt": format_timestamp(self.deleted_at),
        }
        if self.created_at:
            doc["createdAt"] = format_timestamp(self.created_at)
        if self.updated_at:
            doc["updatedAt"] = format_timestamp(self.updated_at)
        if include_id and self.id:
            doc["id"] = self.id
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'Series':
        if not isinstance(data, dict):
            raise ValidationError("Series documents must be objects")
        name = _opt_str(data, "name")
        if not name:
            raise ValidationError("Series name is required")
        expected_raw = data.get("expectedBooks") or []
        if not isinstance(expected_raw, list):
            raise ValidationError("Field 'expectedBooks' must be a list")
        return cls(
            id=doc_id or _opt_str(data, "id"),
            name=name,
            normalized_name=_opt_str(data, "normalizedName") or normalize_series_name(name),
            description=_opt_str(data, "description"),
            total_books=_opt_number(data, "totalBooks", integer=True),
            expected_books=[ExpectedBook.from_dict(b) for b in expected_raw],
            book_count=max(0, _opt_number(data, "bookCount", integer=True) or 0),
            deleted_at=parse_timestamp(data.get("deletedAt")),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


# ---------------------------------------------------------------------------
# Wishlist
# ---------------------------------------------------------------------------

@dataclass
class WishlistItem:
    """A book the user wants but does not own."""
    id: Optional[str] = None
    title: str = ""
    author: str = ""
    isbn: Optional[str] = None
    cover_image_url: Optional[str] = None
    covers: BookCovers = field(default_factory=BookCovers)
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    page_count: Optional[int] = None
    priority: Optional[str] = None
    notes: Optional[str] = None
    added_from: str = "manual"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.isbn:
            self.isbn = clean_isbn(self.isbn) or None
        if self.priority is not None and self.priority not in WISHLIST_PRIORITIES:
            raise ValidationError(f"Priority must be one of {', '.join(WISHLIST_PRIORITIES)}")

    def to_dict(self, include_id: bool = False) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "coverImageUrl": self.cover_image_url,
            "covers": self.covers.to_dict() or None,
            "publisher": self.publisher,
            "publishedDate": self.published_date,
            "pageCount": self.page_count,
            "priority": self.priority,
            "notes": self.notes,
            "addedFrom": self.added_from,
        }
        if self.created_at:
            doc["createdAt"] = format_timestamp(self.created_at)
        if self.updated_at:
            doc["updatedAt"] = format_timestamp(self.updated_at)
        if include_id and self.id:
            doc["id"] = self.id
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'WishlistItem':
        if not isinstance(data, dict):
            raise ValidationError("Wishlist documents must be objects")
        title = _opt_str(data, "title")
        if not title:
            raise ValidationError("Wishlist items need a title")
        return cls(
            id=doc_id or _opt_str(data, "id"),
            title=title,
            author=_opt_str(data, "author") or "",
            isbn=_opt_str(data, "isbn"),
            cover_image_url=_opt_str(data, "coverImageUrl"),
            covers=BookCovers.from_dict(data.get("covers")),
            publisher=_opt_str(data, "publisher"),
            published_date=_opt_str(data, "publishedDate"),
            page_count=_opt_number(data, "pageCount", integer=True),
            priority=_opt_str(data, "priority"),
            notes=_opt_str(data, "notes"),
            added_from=_opt_str(data, "addedFrom") or "manual",
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass
class RecountResult:
    """Outcome of a full-scan counter recalculation."""
    updated: int = 0
    total_books: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"updated": self.updated, "totalBooks": self.total_books}
