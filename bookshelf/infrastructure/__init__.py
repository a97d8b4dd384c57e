"""Document store and hint store adapters."""

from .memory_store import MemoryDocumentStore
from .hint_store import MemoryHintStore, JsonFileHintStore

__all__ = ['MemoryDocumentStore', 'MemoryHintStore', 'JsonFileHintStore']
