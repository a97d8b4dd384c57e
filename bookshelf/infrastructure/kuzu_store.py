"""
Kuzu Document Store

Persists every user collection in an embedded kuzu database. Documents live in a
single ``Document`` node table keyed by ``user/kind/id`` with the camelCase
payload stored as JSON; write batches run inside one kuzu transaction.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import kuzu  # type: ignore

from ..domain.errors import StoreError
from ..domain.models import EntityKind, format_timestamp, now_utc
from ..domain.repositories import (
    DEFAULT_BATCH_LIMIT,
    DocumentStore,
    StagedWrite,
    WriteBatch,
    field_matches,
    new_document_id,
    resolve_server_timestamps,
)

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    "CREATE NODE TABLE IF NOT EXISTS Document("
    "key STRING, user_id STRING, kind STRING, doc_id STRING, data STRING, "
    "PRIMARY KEY(key))",
]


class KuzuWriteBatch(WriteBatch):

    def __init__(self, store: 'KuzuDocumentStore', limit: int):
        super().__init__(limit)
        self._store = store

    async def _apply(self, writes: List[StagedWrite]) -> None:
        self._store._apply_in_transaction(writes)


class KuzuDocumentStore(DocumentStore):
    """Embedded kuzu database holding per-user document collections."""

    def __init__(self, database_path: Optional[str] = None, batch_limit: int = DEFAULT_BATCH_LIMIT,
                 clock: Optional[Callable[[], Any]] = None):
        if database_path:
            self.database_path = database_path
        else:
            # Get the directory from environment or use default, then append the database name
            kuzu_dir = os.getenv('KUZU_DB_PATH', 'data/kuzu')
            self.database_path = os.path.join(kuzu_dir, 'bookshelf.db')
        self.batch_limit = batch_limit
        self._clock = clock or now_utc
        self._database: Optional[kuzu.Database] = None
        self._connection: Optional[kuzu.Connection] = None

    # ---------------------- connection ----------------------
    def connect(self) -> kuzu.Connection:
        """Establish connection and initialize schema."""
        if self._connection is None:
            try:
                Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
                self._database = kuzu.Database(self.database_path)
                self._connection = kuzu.Connection(self._database)
                for statement in SCHEMA_STATEMENTS:
                    self._connection.execute(statement)
                logger.info(f"Kuzu connected at {self.database_path}")
            except Exception as e:
                logger.error(f"Failed to connect to Kuzu: {e}")
                self._connection = None
                self._database = None
                raise StoreError(f"Could not open kuzu database at {self.database_path}: {e}") from e
        return self._connection

    def disconnect(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except Exception as e:
                logger.warning(f"Error closing kuzu connection: {e}")
        if self._database is not None:
            try:
                self._database.close()
            except Exception as e:
                logger.warning(f"Error closing kuzu database: {e}")
        self._connection = None
        self._database = None

    def _execute_query(self, query: str, params: Optional[Dict[str, Any]] = None):
        """Execute a query and normalize the result to always return a QueryResult."""
        connection = self.connect()
        try:
            result = connection.execute(query, params or {})
        except Exception as e:
            logger.error(f"Kuzu query failed: {e}")
            raise StoreError(f"Kuzu query failed: {e}") from e
        # Handle both single QueryResult and list[QueryResult]
        if isinstance(result, list):
            return result[0] if result else None
        return result

    @staticmethod
    def _rows(result) -> List[List[Any]]:
        rows = []
        if result is None:
            return rows
        while result.has_next():
            row = result.get_next()
            rows.append(row if isinstance(row, (list, tuple)) else list(row))
        return rows

    @staticmethod
    def _key(user_id: str, kind: EntityKind, doc_id: str) -> str:
        return f"{user_id}/{kind.value}/{doc_id}"

    def _encode(self, data: Dict[str, Any]) -> str:
        stamp = format_timestamp(self._clock())
        return json.dumps(resolve_server_timestamps(data, stamp))

    @staticmethod
    def _decode(doc_id: str, payload: str) -> Dict[str, Any]:
        try:
            data = json.loads(payload) if payload else {}
        except ValueError as e:
            raise StoreError(f"Corrupt document payload for {doc_id}") from e
        data["id"] = doc_id
        return data

    def _load_payload(self, key: str) -> Optional[str]:
        rows = self._rows(self._execute_query(
            "MATCH (d:Document) WHERE d.key = $key RETURN d.data", {"key": key}
        ))
        return rows[0][0] if rows else None

    # ---------------------- writes ----------------------
    def _create(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        key = self._key(user_id, kind, doc_id)
        if self._load_payload(key) is not None:
            raise StoreError(f"Document already exists: {kind.value}/{doc_id}")
        self._execute_query(
            "CREATE (d:Document {key: $key, user_id: $user_id, kind: $kind, doc_id: $doc_id, data: $data})",
            {"key": key, "user_id": user_id, "kind": kind.value, "doc_id": doc_id,
             "data": self._encode(data)},
        )

    def _update(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        key = self._key(user_id, kind, doc_id)
        payload = self._load_payload(key)
        if payload is None:
            raise StoreError(f"No document to update: {kind.value}/{doc_id}")
        merged = json.loads(payload)
        merged.update(json.loads(self._encode(data)))
        self._execute_query(
            "MATCH (d:Document) WHERE d.key = $key SET d.data = $data",
            {"key": key, "data": json.dumps(merged)},
        )

    def _delete(self, user_id: str, kind: EntityKind, doc_id: str) -> None:
        self._execute_query(
            "MATCH (d:Document) WHERE d.key = $key DELETE d",
            {"key": self._key(user_id, kind, doc_id)},
        )

    def _apply_in_transaction(self, writes: List[StagedWrite]) -> None:
        self._execute_query("BEGIN TRANSACTION")
        try:
            for write in writes:
                if write.op == 'create':
                    self._create(write.user_id, write.kind, write.doc_id, write.data)
                elif write.op == 'update':
                    self._update(write.user_id, write.kind, write.doc_id, write.data)
                elif write.op == 'delete':
                    self._delete(write.user_id, write.kind, write.doc_id)
                else:
                    raise StoreError(f"Unknown batch operation: {write.op}")
        except Exception:
            try:
                self._execute_query("ROLLBACK")
            except StoreError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            raise
        self._execute_query("COMMIT")
        logger.debug(f"Committed kuzu batch of {len(writes)} writes")

    # ---------------------- DocumentStore ----------------------
    async def get_all(self, user_id: str, kind: EntityKind) -> List[Dict[str, Any]]:
        rows = self._rows(self._execute_query(
            "MATCH (d:Document) WHERE d.user_id = $user_id AND d.kind = $kind "
            "RETURN d.doc_id, d.data ORDER BY d.doc_id",
            {"user_id": user_id, "kind": kind.value},
        ))
        return [self._decode(row[0], row[1]) for row in rows]

    async def get_by_id(self, user_id: str, kind: EntityKind, doc_id: str) -> Optional[Dict[str, Any]]:
        payload = self._load_payload(self._key(user_id, kind, doc_id))
        return self._decode(doc_id, payload) if payload is not None else None

    async def create(self, user_id: str, kind: EntityKind, data: Dict[str, Any],
                     doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        self._create(user_id, kind, doc_id, data)
        return doc_id

    async def update(self, user_id: str, kind: EntityKind, doc_id: str, data: Dict[str, Any]) -> None:
        self._update(user_id, kind, doc_id, data)

    async def delete(self, user_id: str, kind: EntityKind, doc_id: str) -> None:
        self._delete(user_id, kind, doc_id)

    async def query_by_field(self, user_id: str, kind: EntityKind, field_name: str,
                             value: Any) -> List[Dict[str, Any]]:
        # Payloads are opaque JSON to kuzu, so the field filter runs here
        documents = await self.get_all(user_id, kind)
        return [doc for doc in documents if field_matches(doc, field_name, value)]

    def batch(self) -> WriteBatch:
        return KuzuWriteBatch(self, self.batch_limit)
