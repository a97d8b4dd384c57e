"""
Error taxonomy for the library core.

ValidationError and NotFoundError are raised before any write is issued.
StoreError wraps transport/backend failures and is re-raised unchanged by
services. PartialFailure is a record, not an exception: best-effort steps
collect them instead of aborting their parent operation.
"""

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..services.import_service import ImportSummary


class BookshelfError(Exception):
    """Base class for every error raised by the library core."""


class ValidationError(BookshelfError):
    """Input rejected before any I/O (uniqueness, schema, backup format)."""


class NotFoundError(BookshelfError):
    """Operation targeted an entity that does not exist."""

    def __init__(self, kind: str, entity_id: Optional[str], message: Optional[str] = None):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(message or f"{kind} not found: {entity_id}")


class StoreError(BookshelfError):
    """Document store or transport failure."""


class ImportAborted(StoreError):
    """A store failure stopped an import part-way.

    Earlier phases stay committed; ``summary`` describes them and ``phase``
    names the phase that failed.
    """

    def __init__(self, phase: str, summary: 'ImportSummary', message: str):
        self.phase = phase
        self.summary = summary
        super().__init__(message)


@dataclass
class PartialFailure:
    """A best-effort step that failed without aborting its parent operation."""
    phase: str
    entity_id: Optional[str]
    reason: str

    def describe(self) -> str:
        target = f" ({self.entity_id})" if self.entity_id else ""
        return f"{self.phase}{target}: {self.reason}"
