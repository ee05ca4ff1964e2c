"""Small asyncio helpers shared by the relay."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


async def wait_within(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Behaves like ``asyncio.wait_for`` but a cancellation of the caller is
    always propagated, even when the inner operation finishes in the same
    loop iteration (``wait_for`` on Python 3.10/3.11 can drop it).

    Raises:
        asyncio.TimeoutError: The timeout elapsed first. The inner
            operation has been cancelled.
    """
    inner = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({inner}, timeout=timeout)
    except asyncio.CancelledError:
        inner.cancel()
        raise
    if not done:
        inner.cancel()
        raise asyncio.TimeoutError()
    return inner.result()
