"""
Storage interfaces for the domain layer.

These interfaces define the contracts for data access without coupling to specific implementations.
Following the Repository pattern and Dependency Inversion Principle: services only ever talk
to a DocumentStore (per-user collections of camelCase documents) and a HintStore
(non-authoritative key-value hints).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
import uuid

from .errors import ValidationError, StoreError
from .models import EntityKind


DEFAULT_BATCH_LIMIT = 500


class _ServerTimestamp:
    """Placeholder resolved to the store's clock at write time.

    It has no ordering and must never be compared locally; code that needs to
    redisplay a freshly written timestamp substitutes its own wall-clock value.
    """

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def new_document_id() -> str:
    return uuid.uuid4().hex


@dataclass
class StagedWrite:
    """One write waiting in a batch."""
    op: str  # 'create' | 'update' | 'delete'
    user_id: str
    kind: EntityKind
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class WriteBatch(ABC):
    """Staged writes committed as one all-or-nothing unit."""

    def __init__(self, limit: int = DEFAULT_BATCH_LIMIT):
        self.limit = limit
        self._writes: List[StagedWrite] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    @property
    def writes(self) -> List[StagedWrite]:
        return list(self._writes)

    def _stage(self, write: StagedWrite) -> None:
        if self._committed:
            raise ValidationError("Batch has already been committed")
        if len(self._writes) >= self.limit:
            raise ValidationError(
                f"Batch exceeds the store limit of {self.limit} operations; split the work into chunks"
            )
        self._writes.append(write)

    def stage_create(self, user_id: str, kind: EntityKind, data: Dict[str, Any],
                     doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        self._stage(StagedWrite('create', user_id, kind, doc_id, dict(data)))
        return doc_id

    def stage_update(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        self._stage(StagedWrite('update', user_id, kind, doc_id, dict(data)))

    def stage_delete(self, user_id: str, kind: EntityKind, doc_id: str) -> None:
        self._stage(StagedWrite('delete', user_id, kind, doc_id))

    async def commit(self) -> int:
        """Apply every staged write atomically. Returns the number of writes."""
        if self._committed:
            raise ValidationError("Batch has already been committed")
        if not self._writes:
            self._committed = True
            return 0
        await self._apply(self._writes)
        self._committed = True
        return len(self._writes)

    @abstractmethod
    async def _apply(self, writes: List[StagedWrite]) -> None:
        """Backend-specific atomic application of the staged writes."""
        pass


class DocumentStore(ABC):
    """Per-user document collections (books, genres, series, wishlist).

    Documents are returned as plain dicts with the document id under ``"id"``.
    Every backend failure surfaces as StoreError.
    """

    batch_limit: int = DEFAULT_BATCH_LIMIT

    @abstractmethod
    async def get_all(self, user_id: str, kind: EntityKind) -> List[Dict[str, Any]]:
        """Get every document of a collection."""
        pass

    @abstractmethod
    async def get_by_id(self, user_id: str, kind: EntityKind, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get one document, or None when absent."""
        pass

    @abstractmethod
    async def create(self, user_id: str, kind: EntityKind, data: Dict[str, Any],
                     doc_id: Optional[str] = None) -> str:
        """Create a document and return its id."""
        pass

    @abstractmethod
    async def update(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        """Merge fields into an existing document (StoreError when it is missing)."""
        pass

    @abstractmethod
    async def delete(self, user_id: str, kind: EntityKind, doc_id: str) -> None:
        """Delete a document; deleting a missing document is a no-op."""
        pass

    @abstractmethod
    async def query_by_field(self, user_id: str, kind: EntityKind, field_name: str,
                             value: Any) -> List[Dict[str, Any]]:
        """Documents whose field equals ``value`` (or, for list fields, contains it)."""
        pass

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start a new write batch bounded by ``batch_limit``."""
        pass


class HintStore(ABC):
    """Client-side key-value store for non-authoritative cache hints.

    Implementations may raise on any call; callers treat every failure as
    "no cached value".
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


def field_matches(document: Dict[str, Any], field_name: str, value: Any) -> bool:
    """Equality for scalars, membership for list fields (array-contains)."""
    current = document.get(field_name)
    if isinstance(current, list):
        return value in current
    return current == value


def ensure_writes_valid(writes: List[StagedWrite], existing_ids: set) -> None:
    """Reject a batch whose updates target documents that are not there."""
    created = set()
    for write in writes:
        key = (write.user_id, write.kind, write.doc_id)
        if write.op == 'create':
            created.add(key)
        elif write.op == 'update' and key not in existing_ids and key not in created:
            raise StoreError(f"No document to update: {write.kind.value}/{write.doc_id}")


def resolve_server_timestamps(data: Dict[str, Any], stamp: str) -> Dict[str, Any]:
    """Copy of ``data`` with SERVER_TIMESTAMP replaced by the store's clock value."""
    return {
        key: (stamp if value is SERVER_TIMESTAMP else value)
        for key, value in data.items()
        if key != "id"
    }


async def commit_updates_in_chunks(store: DocumentStore, user_id: str, kind: EntityKind,
                                   updates: List[tuple]) -> int:
    """Apply ``(doc_id, data)`` updates in batches no larger than the store ceiling.

    Each chunk is atomic on its own; a failure leaves earlier chunks committed.
    """
    written = 0
    limit = max(1, store.batch_limit)
    for start in range(0, len(updates), limit):
        batch = store.batch()
        for doc_id, data in updates[start:start + limit]:
            batch.stage_update(user_id, kind, doc_id, data)
        written += await batch.commit()
    return written


async def commit_deletes_in_chunks(store: DocumentStore, user_id: str, kind: EntityKind,
                                   doc_ids: List[str]) -> int:
    deleted = 0
    limit = max(1, store.batch_limit)
    for start in range(0, len(doc_ids), limit):
        batch = store.batch()
        for doc_id in doc_ids[start:start + limit]:
            batch.stage_delete(user_id, kind, doc_id)
        deleted += await batch.commit()
    return deleted
