"""Per-socket connection state."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from cmdrelay.domain.models import ConnectionInfo, TargetBinding
from cmdrelay.utils.aio import wait_within

logger = logging.getLogger(__name__)


class ConnectionHandle:
    """Server-side record of one live TCP client.

    Identity, peer address and connect time are fixed at accept time.
    ``active`` flips to False exactly once (see ``deactivate()``); after
    that no further writes are attempted on the socket.

    Any party may ask the connection to wind down with
    ``request_close()``; the connection's own task notices, answers what
    it already read without starting new commands, and tears down.
    """

    def __init__(
        self,
        connection_id: int,
        writer: asyncio.StreamWriter,
        write_timeout: float = 5.0,
    ) -> None:
        peer = writer.get_extra_info("peername") or ("unknown", 0)
        self._id = connection_id
        self._writer = writer
        self._write_timeout = write_timeout
        self._peer_address: str = str(peer[0])
        self._peer_port: int = int(peer[1]) if len(peer) > 1 else 0
        self._connected_at = datetime.now()
        self._last_activity_at = self._connected_at
        self._active = True
        self._target: TargetBinding | None = None
        self._write_lock = asyncio.Lock()
        self._closing = asyncio.Event()
        self._close_reason: str | None = None

    @property
    def id(self) -> int:
        return self._id

    @property
    def peer_address(self) -> str:
        return self._peer_address

    @property
    def peer_port(self) -> int:
        return self._peer_port

    @property
    def connected_at(self) -> datetime:
        return self._connected_at

    @property
    def last_activity_at(self) -> datetime:
        return self._last_activity_at

    @property
    def active(self) -> bool:
        return self._active

    @property
    def target(self) -> TargetBinding | None:
        """Downstream target set by a structured ``bind``, if any."""
        return self._target

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def bind_target(self, target: TargetBinding) -> None:
        """Set (or overwrite) the downstream target binding."""
        self._target = target

    def touch(self) -> None:
        """Record inbound activity."""
        self._last_activity_at = datetime.now()

    def deactivate(self) -> bool:
        """Flip ``active`` to False. Returns True only on the first call."""
        if not self._active:
            return False
        self._active = False
        return True

    def request_close(self, reason: str) -> bool:
        """Ask the connection to wind down. Only the first reason is kept."""
        if self._closing.is_set():
            return False
        self._close_reason = reason
        self._closing.set()
        return True

    async def wait_closing(self) -> None:
        await self._closing.wait()

    async def send(self, data: bytes) -> bool:
        """Write ``data`` and wait for it to drain.

        Returns False (instead of raising) when the handle is inactive or
        the write fails or does not drain within the write timeout.
        """
        if not self._active:
            return False
        async with self._write_lock:
            if not self._active or self._writer.is_closing():
                return False
            try:
                self._writer.write(data)
                await wait_within(self._writer.drain(), self._write_timeout)
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                logger.debug("Write to connection %d failed: %r", self._id, e)
                return False
        return True

    async def close(self) -> None:
        """Close the underlying socket from the server side."""
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await wait_within(self._writer.wait_closed(), self._write_timeout)
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Error closing connection %d: %r", self._id, e)

    def abort(self, reason: str = "aborted") -> None:
        """Request close and drop the socket immediately without flushing."""
        self.request_close(reason)
        transport = self._writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    def info(self, now: datetime | None = None) -> ConnectionInfo:
        """Snapshot of this connection for status reporting."""
        now = now or datetime.now()
        return ConnectionInfo(
            id=self._id,
            peer_address=self._peer_address,
            peer_port=self._peer_port,
            connected_at=self._connected_at,
            duration_seconds=max(0, round((now - self._connected_at).total_seconds())),
            target=self._target,
        )

    def __repr__(self) -> str:
        return (
            f"ConnectionHandle(id={self._id}, peer={self._peer_address}:{self._peer_port}, "
            f"active={self._active})"
        )
