"""Future handles shared by every validator kind."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable


def resolved(value: Any) -> asyncio.Future:
    """Return a future of the running loop already resolved to `value`."""
    future = asyncio.get_running_loop().create_future()
    future.set_result(value)
    return future


def failed(exc: BaseException) -> asyncio.Future:
    """Return a future of the running loop already failed with `exc`."""
    future = asyncio.get_running_loop().create_future()
    future.set_exception(exc)
    return future


def as_handle(result: Any) -> asyncio.Future:
    """Wrap a predicate result (plain value or awaitable) into a future."""
    if inspect.isawaitable(result):
        return asyncio.ensure_future(result)
    return resolved(result)


def callback_handle(func: Callable[[Any, Callable[..., None]], Any], value: Any):
    """
    Run a callback-style predicate ``func(value, done)`` behind a future.

    The first ``done(ok)`` call resolves the future; later calls are ignored.
    """
    future = asyncio.get_running_loop().create_future()

    def done(ok: Any = True) -> None:
        if not future.done():
            future.set_result(ok)

    try:
        func(value, done)
    except Exception as exc:
        if not future.done():
            future.set_exception(exc)
    return future
