"""
In-process document store.

Holds every collection in dictionaries. Used for tests and for throwaway
sessions (STORE_BACKEND=memory); semantics match the kuzu store: copies in and
out, atomic batches, server timestamps resolved at write time.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..domain.errors import StoreError
from ..domain.models import EntityKind, format_timestamp, now_utc
from ..domain.repositories import (
    DEFAULT_BATCH_LIMIT,
    DocumentStore,
    StagedWrite,
    WriteBatch,
    ensure_writes_valid,
    field_matches,
    new_document_id,
    resolve_server_timestamps,
)

logger = logging.getLogger(__name__)

_CollectionKey = Tuple[str, EntityKind]


class MemoryWriteBatch(WriteBatch):

    def __init__(self, store: 'MemoryDocumentStore', limit: int):
        super().__init__(limit)
        self._store = store

    async def _apply(self, writes: List[StagedWrite]) -> None:
        self._store._apply_writes(writes)


class MemoryDocumentStore(DocumentStore):
    """Dictionary-backed DocumentStore."""

    def __init__(self, batch_limit: int = DEFAULT_BATCH_LIMIT,
                 clock: Optional[Callable[[], Any]] = None):
        self.batch_limit = batch_limit
        self._clock = clock or now_utc
        self._collections: Dict[_CollectionKey, Dict[str, Dict[str, Any]]] = {}

    # ---------------------- helpers ----------------------
    def _collection(self, user_id: str, kind: EntityKind) -> Dict[str, Dict[str, Any]]:
        if not user_id:
            raise StoreError("A user id is required for every store operation")
        return self._collections.setdefault((user_id, kind), {})

    def _resolve(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return copy.deepcopy(resolve_server_timestamps(data, format_timestamp(self._clock())))

    @staticmethod
    def _out(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(data)
        out["id"] = doc_id
        return out

    def _apply_writes(self, writes: List[StagedWrite]) -> None:
        existing = {
            (user_id, kind, doc_id)
            for (user_id, kind), docs in self._collections.items()
            for doc_id in docs
        }
        # Validate the whole batch first so a bad write leaves nothing applied
        ensure_writes_valid(writes, existing)
        logger.debug(f"Applying batch of {len(writes)} writes")
        for write in writes:
            docs = self._collection(write.user_id, write.kind)
            if write.op == 'create':
                docs[write.doc_id] = self._resolve(write.data)
            elif write.op == 'update':
                docs[write.doc_id].update(self._resolve(write.data))
            elif write.op == 'delete':
                docs.pop(write.doc_id, None)
            else:
                raise StoreError(f"Unknown batch operation: {write.op}")

    # ---------------------- DocumentStore ----------------------
    async def get_all(self, user_id: str, kind: EntityKind) -> List[Dict[str, Any]]:
        docs = self._collection(user_id, kind)
        return [self._out(doc_id, data) for doc_id, data in docs.items()]

    async def get_by_id(self, user_id: str, kind: EntityKind, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._collection(user_id, kind).get(doc_id)
        return self._out(doc_id, data) if data is not None else None

    async def create(self, user_id: str, kind: EntityKind, data: Dict[str, Any],
                     doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        docs = self._collection(user_id, kind)
        if doc_id in docs:
            raise StoreError(f"Document already exists: {kind.value}/{doc_id}")
        docs[doc_id] = self._resolve(data)
        return doc_id

    async def update(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        docs = self._collection(user_id, kind)
        if doc_id not in docs:
            raise StoreError(f"No document to update: {kind.value}/{doc_id}")
        docs[doc_id].update(self._resolve(data))

    async def delete(self, user_id: str, kind: EntityKind, doc_id: str) -> None:
        self._collection(user_id, kind).pop(doc_id, None)

    async def query_by_field(self, user_id: str, kind: EntityKind, field_name: str,
                             value: Any) -> List[Dict[str, Any]]:
        docs = self._collection(user_id, kind)
        return [self._out(doc_id, data) for doc_id, data in docs.items()
                if field_matches(data, field_name, value)]

    def batch(self) -> WriteBatch:
        return MemoryWriteBatch(self, self.batch_limit)
