import random
from datetime import datetime, timedelta, timezone

import pytest

from bookshelf.domain.errors import StoreError
from bookshelf.domain.models import Book, EntityKind
from bookshelf.infrastructure import MemoryDocumentStore
from bookshelf.services import LibraryServices

USER = "user-1"
OTHER_USER = "user-2"
START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Settable clock injected wherever the services read the time."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class BatchFailingStore(MemoryDocumentStore):
    """Memory store whose batch commits fail once `failing` is switched on."""

    failing = False

    def _apply_writes(self, writes):
        if self.failing:
            raise StoreError("backend unavailable")
        super()._apply_writes(writes)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return MemoryDocumentStore(clock=clock)


def make_library(store, clock, **kwargs) -> LibraryServices:
    library = LibraryServices(store, clock=clock, rng=random.Random(7), **kwargs)
    library.start_session(USER)
    return library


@pytest.fixture
def library(store, clock):
    return make_library(store, clock)


async def add_book(library: LibraryServices, title: str, author: str = "Author", **fields) -> Book:
    return await library.books.create_book(USER, Book(title=title, author=author, **fields))


async def book_doc(store, book_id: str, user_id: str = USER) -> dict:
    return await store.get_by_id(user_id, EntityKind.BOOKS, book_id)
