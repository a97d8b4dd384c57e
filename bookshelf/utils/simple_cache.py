import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar('T')


@dataclass
class CacheEntry(Generic[T]):
    payload: T
    owner_user_id: str
    fetched_at: float


class EntityCache(Generic[T]):
    """Single-slot TTL cache tagged with the user it was loaded for.

    An entry is served only to its owner and only while younger than the TTL,
    so a user switch can never leak another user's data even if nobody
    remembered to clear it.
    """

    def __init__(self, name: str, ttl_seconds: float = 300, clock: Optional[Callable[[], float]] = None):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._entry: Optional[CacheEntry[T]] = None

    def is_valid(self, user_id: str) -> bool:
        entry = self._entry
        if entry is None or entry.owner_user_id != user_id:
            return False
        return (self._clock() - entry.fetched_at) < self.ttl_seconds

    def get(self, user_id: str) -> Optional[T]:
        if self.is_valid(user_id):
            return self._entry.payload
        return None

    def set(self, user_id: str, payload: T) -> None:
        self._entry = CacheEntry(payload=payload, owner_user_id=user_id, fetched_at=self._clock())

    def invalidate(self) -> None:
        self._entry = None

    @property
    def owner_user_id(self) -> Optional[str]:
        return self._entry.owner_user_id if self._entry else None

    def age(self) -> Optional[float]:
        if self._entry is None:
            return None
        return self._clock() - self._entry.fetched_at

    def peek(self) -> Any:
        """Current payload regardless of owner or age (diagnostics only)."""
        return self._entry.payload if self._entry else None
