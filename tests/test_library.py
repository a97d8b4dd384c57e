import asyncio

import pytest

from bookshelf import create_library
from bookshelf.domain.models import EntityKind
from bookshelf.infrastructure import MemoryDocumentStore
from bookshelf.services import run_async
from config import TestingConfig

from conftest import USER, add_book


def test_create_library_uses_memory_backend_for_testing():
    library = create_library(TestingConfig, user_id=USER)
    assert isinstance(library.store, MemoryDocumentStore)
    assert library.cache.hints is None
    assert library.start_session(USER) is False


def test_run_async_runs_coroutines_and_wraps_functions():
    async def double(value):
        await asyncio.sleep(0)
        return value * 2

    assert run_async(double(2)) == 4
    assert run_async(double)(5) == 10
    with pytest.raises(TypeError):
        run_async(42)


@pytest.mark.asyncio
async def test_run_async_inside_running_loop():
    async def answer():
        return 42

    assert run_async(answer()) == 42


@pytest.mark.asyncio
async def test_recount_repairs_drifted_counters(library, store):
    genre = await library.genres.create_genre(USER, "Fantasy")
    series = await library.series.create_series(USER, "Dune")
    await add_book(library, "Dune", genres=[genre.id], series_id=series.id)
    await store.update(USER, EntityKind.GENRES, genre.id, {"bookCount": 7})
    await store.update(USER, EntityKind.SERIES, series.id, {"bookCount": 0})

    result = await library.recount(USER)

    assert result == {"genres": {"updated": 1, "totalBooks": 1}, "series": {"updated": 1, "totalBooks": 1}}
