"""
Async Helper Utilities

Sync bridge for the coroutine-based services, used by the CLI and any other
synchronous caller.
"""

import asyncio
import concurrent.futures
from typing import Any, TypeVar
from functools import wraps

T = TypeVar('T')


def run_async(coro_or_func) -> Any:
    """
    Run an async coroutine synchronously or convert an async function to sync.

    Usage:
    - run_async(service.method(args)) - runs a coroutine directly
    - run_async(service.method) - returns a sync wrapper function

    Raises:
        TypeError: If the argument is neither a coroutine nor callable
    """
    # If it's a coroutine, run it directly
    if hasattr(coro_or_func, '__await__'):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None and loop.is_running():
            # We're in an already running loop, need to run in a separate thread
            with concurrent.futures.ThreadPoolExecutor() as executor:
                future = executor.submit(asyncio.run, coro_or_func)
                return future.result()
        return asyncio.run(coro_or_func)

    # If it's a callable (function), return a sync wrapper
    elif callable(coro_or_func):
        @wraps(coro_or_func)
        def wrapper(*args, **kwargs):
            coro = coro_or_func(*args, **kwargs)
            return run_async(coro)
        return wrapper

    else:
        raise TypeError(f"Expected coroutine or callable, got {type(coro_or_func)}")
