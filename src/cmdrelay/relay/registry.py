"""Concurrency-safe table of live connections.

The registry is the single source of truth for status reporting and
broadcast. Mutation goes through ``register()``/``deregister()`` under a
lock; readers take a snapshot and never hold the lock across socket I/O.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

from cmdrelay.relay.connection import ConnectionHandle

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Owns every live ``ConnectionHandle``.

    A handle present in the registry is always active: ``deregister()``
    removes the handle and flips its ``active`` flag under the same lock,
    so concurrent readers never observe an inactive handle.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[int, ConnectionHandle] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._handles

    def register(self, handle: ConnectionHandle) -> None:
        """Insert an active handle. Duplicate ids are rejected."""
        with self._lock:
            if not handle.active:
                raise ValueError(f"Cannot register inactive connection {handle.id}")
            if handle.id in self._handles:
                raise ValueError(f"Connection {handle.id} is already registered")
            self._handles[handle.id] = handle

    def deregister(self, connection_id: int) -> ConnectionHandle | None:
        """Remove and deactivate a handle.

        Returns the handle on the first call for ``connection_id`` and
        None afterwards, so callers can tell who won a teardown race.
        """
        with self._lock:
            handle = self._handles.pop(connection_id, None)
            if handle is not None:
                handle.deactivate()
        return handle

    def list(self) -> list[ConnectionHandle]:
        """Point-in-time copy of the live handles, ordered by id."""
        with self._lock:
            return sorted(self._handles.values(), key=lambda h: h.id)

    async def broadcast(
        self,
        data: bytes,
        on_failure: Callable[[ConnectionHandle], None] | None = None,
    ) -> int:
        """Write ``data`` to every registered connection.

        Writes run concurrently over a snapshot so a slow consumer cannot
        hold up the others. Failures are logged and skipped.

        Returns:
            The number of connections successfully written to.
        """
        handles = self.list()
        if not handles:
            return 0
        results = await asyncio.gather(
            *(handle.send(data) for handle in handles), return_exceptions=True
        )
        sent = 0
        for handle, result in zip(handles, results):
            if result is True:
                sent += 1
                continue
            if isinstance(result, BaseException):
                logger.warning("Broadcast to connection %d raised: %r", handle.id, result)
            else:
                logger.warning("Broadcast to connection %d failed", handle.id)
            if on_failure is not None:
                on_failure(handle)
        return sent
