"""Relay listener lifecycle: accept loop, idle timeouts, coordinated shutdown.

Each accepted socket gets its own task. Inside that task a read loop
feeds complete frames into a queue and a work loop dispatches them one
at a time, so a connection's replies stay in order while the read loop
keeps enforcing the idle timeout.

A connection ends through ``ConnectionHandle.request_close()``: peer EOF,
a socket error, the idle timeout, ``DISCONNECT``, a failed write or
server shutdown. The work loop then kills the command it is running,
answers the frames it already read without starting new commands, and
returns; the socket is closed after that.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cmdrelay.config.settings import RelayConfig, Settings
from cmdrelay.domain.models import RelayEvent, RelayEventKind, RelayStatus, ServerState
from cmdrelay.relay.connection import ConnectionHandle
from cmdrelay.relay.dispatcher import (
    DispatchOutcome,
    Dispatcher,
    LineDispatcher,
    StructuredDispatcher,
)
from cmdrelay.relay.executor import CommandExecutor
from cmdrelay.relay.protocol import LineFramer, ReplyTag
from cmdrelay.relay.registry import ConnectionRegistry
from cmdrelay.utils.aio import wait_within
from cmdrelay.utils.logging import log_event

logger = logging.getLogger(__name__)

EventSink = Callable[[RelayEvent], None]

READ_CHUNK_SIZE = 4096
SHUTDOWN_NOTICE = "server is shutting down, please save your work and disconnect"
IDLE_TIMEOUT_NOTICE = "connection idle timeout, server closing connection"


class RelayError(Exception):
    """Base class for relay lifecycle errors."""


class RelayStartError(RelayError):
    """Raised when a listener cannot be started."""


def _abort_after_failed_broadcast(handle: ConnectionHandle) -> None:
    handle.abort("write failed")


class RelayServer:
    """Owns one listening socket and every connection accepted on it.

    States: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED.

    Usage::

        server = RelayServer(LineDispatcher(), host="127.0.0.1", port=3001)
        await server.start()
        ...
        sent = await server.broadcast("maintenance in 5 minutes")
        await server.close()
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        host: str = "0.0.0.0",
        port: int = 3001,
        config: RelayConfig | None = None,
        event_sink: EventSink | None = None,
        name: str | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._host = host
        self._port = port
        self._config = config or RelayConfig()
        self._event_sink = event_sink
        self._name = name or dispatcher.name
        self._registry = ConnectionRegistry()
        self._dispatcher.attach(self._registry, self._emit)
        self._state = ServerState.STOPPED
        self._server: asyncio.AbstractServer | None = None
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._started: asyncio.Event | None = None
        self._stopped: asyncio.Event | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServerState.RUNNING

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        """The bound port once running (resolves port 0)."""
        return self._port

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def start(self, port: int | None = None) -> None:
        """Bind and begin accepting connections.

        Raises:
            RelayStartError: If the server is not stopped or the port
                cannot be bound.
        """
        if self._state != ServerState.STOPPED:
            raise RelayStartError(f"{self._name} listener is {self._state.value}")
        if port is not None:
            self._port = port

        self._state = ServerState.STARTING
        self._started = asyncio.Event()
        try:
            self._server = await asyncio.start_server(self._on_accept, self._host, self._port)
        except OSError as e:
            self._state = ServerState.STOPPED
            self._emit(RelayEventKind.ERROR, error=str(e), host=self._host, port=self._port)
            raise RelayStartError(
                f"{self._name} listener cannot bind {self._host}:{self._port}: {e}"
            ) from e
        else:
            sockets = self._server.sockets or ()
            if sockets:
                self._port = sockets[0].getsockname()[1]
            self._stopped = asyncio.Event()
            self._state = ServerState.RUNNING
            self._emit(RelayEventKind.SERVER_STARTED, host=self._host, port=self._port)
        finally:
            self._started.set()

    async def close(self) -> None:
        """Notify clients, wait the grace period, then tear everything down.

        Safe to call repeatedly: a stopped server is a no-op, a call made
        while the listener is still starting waits for it to come up and
        then closes it, and a second call during shutdown waits for the
        first to finish.
        """
        if self._state == ServerState.STARTING and self._started is not None:
            await self._started.wait()
        if self._state == ServerState.STOPPING:
            if self._stopped is not None:
                await self._stopped.wait()
            return
        if self._state != ServerState.RUNNING:
            return

        self._state = ServerState.STOPPING
        try:
            if len(self._registry):
                await self.broadcast(SHUTDOWN_NOTICE)
                await asyncio.sleep(self._config.shutdown_grace)

            if self._server is not None:
                self._server.close()

            for handle in self._registry.list():
                handle.request_close("server shutdown")
            tasks = list(self._tasks)
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=self._config.write_timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            if self._server is not None:
                try:
                    await wait_within(self._server.wait_closed(), self._config.write_timeout)
                except asyncio.TimeoutError:
                    logger.warning("%s listener did not close within %.1fs",
                                   self._name, self._config.write_timeout)
        finally:
            self._server = None
            self._state = ServerState.STOPPED
            self._emit(RelayEventKind.SERVER_STOPPED)
            if self._stopped is not None:
                self._stopped.set()

    async def __aenter__(self) -> RelayServer:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()

    # -------------------------------------------------------------------
    # Admin surface
    # -------------------------------------------------------------------

    def get_status(self) -> RelayStatus:
        """Snapshot of the listener and its live connections."""
        handles = self._registry.list()
        now = datetime.now()
        return RelayStatus(
            is_running=self.is_running,
            total_clients=len(handles),
            active_clients=[handle.info(now) for handle in handles],
        )

    async def broadcast(self, text: str) -> int:
        """Send a ``BROADCAST`` notice to every connection.

        Returns:
            The number of connections the notice was written to.
        """
        data = self._dispatcher.notice(ReplyTag.BROADCAST, text)
        sent = await self._registry.broadcast(data, on_failure=_abort_after_failed_broadcast)
        self._emit(
            RelayEventKind.BROADCAST,
            message=text[:100],
            sent_count=sent,
            total_clients=len(self._registry),
        )
        return sent

    # -------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------

    async def _on_accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._state != ServerState.RUNNING:
            writer.close()
            return

        handle = ConnectionHandle(next(self._ids), writer, write_timeout=self._config.write_timeout)
        self._registry.register(handle)
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)

        reason = "closed"
        try:
            self._emit(
                RelayEventKind.CONNECTED,
                handle.id,
                peer=f"{handle.peer_address}:{handle.peer_port}",
                total_clients=len(self._registry),
            )
            greeting = self._dispatcher.greeting(handle)
            if greeting is not None and not await handle.send(greeting):
                reason = "write failed"
            else:
                reason = await self._serve(handle, reader)
        except asyncio.CancelledError:
            # This task is the streams callback: it must end normally.
            reason = handle.close_reason or "cancelled"
        except Exception as e:
            logger.exception("Unexpected error on %s connection %d", self._name, handle.id)
            self._emit(RelayEventKind.ERROR, handle.id, error=str(e))
            reason = f"internal error: {e}"
        finally:
            await self._terminate(handle, reason)
            if task is not None:
                self._tasks.discard(task)

    async def _serve(self, handle: ConnectionHandle, reader: asyncio.StreamReader) -> str:
        """Run the connection until it is asked to close; return the reason."""
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        read_task = asyncio.create_task(self._read_loop(handle, reader, queue))
        try:
            return await self._work_loop(handle, queue)
        finally:
            read_task.cancel()
            await asyncio.gather(read_task, return_exceptions=True)

    async def _read_loop(
        self,
        handle: ConnectionHandle,
        reader: asyncio.StreamReader,
        queue: asyncio.Queue[bytes | None],
    ) -> None:
        """Queue inbound frames until EOF, an error, the idle timeout or a close request."""
        framer = LineFramer(self._config.max_frame_bytes)
        try:
            while not handle.closing:
                try:
                    data = await wait_within(
                        reader.read(READ_CHUNK_SIZE), self._config.idle_timeout
                    )
                except asyncio.TimeoutError:
                    idle = (datetime.now() - handle.last_activity_at).total_seconds()
                    self._emit(RelayEventKind.TIMEOUT, handle.id, idle_seconds=round(idle, 1))
                    await handle.send(
                        self._dispatcher.notice(ReplyTag.TIMEOUT, IDLE_TIMEOUT_NOTICE)
                    )
                    handle.request_close("idle timeout")
                    return
                except (ConnectionError, OSError) as e:
                    self._emit(RelayEventKind.ERROR, handle.id, error=str(e) or type(e).__name__)
                    handle.request_close(f"connection error: {e}")
                    return

                if not data:
                    handle.request_close("closed by peer")
                    return

                handle.touch()
                for frame in framer.feed(data):
                    queue.put_nowait(frame)
        finally:
            handle.request_close("read loop ended")

    async def _work_loop(self, handle: ConnectionHandle, queue: asyncio.Queue[bytes | None]) -> str:
        """Answer frames in order; once closing, drain the queue and stop."""
        closing = asyncio.ensure_future(handle.wait_closing())
        try:
            while True:
                if handle.closing:
                    if queue.empty():
                        return handle.close_reason or "closed"
                    frame = queue.get_nowait()
                else:
                    getter = asyncio.ensure_future(queue.get())
                    try:
                        await asyncio.wait({getter, closing}, return_when=asyncio.FIRST_COMPLETED)
                    except asyncio.CancelledError:
                        getter.cancel()
                        raise
                    if not getter.done():
                        getter.cancel()
                        await asyncio.gather(getter, return_exceptions=True)
                        continue
                    frame = getter.result()

                outcome = await self._answer(handle, frame, closing)
                if outcome.reply is not None and not await handle.send(outcome.reply):
                    self._emit(RelayEventKind.ERROR, handle.id, error="write failed")
                    handle.request_close("write failed")
                    return handle.close_reason or "write failed"
                if outcome.close:
                    handle.request_close("disconnect requested")
                    return handle.close_reason or "disconnect requested"
        finally:
            closing.cancel()

    async def _answer(
        self,
        handle: ConnectionHandle,
        frame: bytes | None,
        closing: asyncio.Future[None],
    ) -> DispatchOutcome:
        """Dispatch one frame; a close request kills the command it started."""
        if frame is None:
            return DispatchOutcome(reply=self._dispatcher.error_reply("line too long"))
        if handle.closing:
            return await self._dispatch(handle, frame)

        task = asyncio.ensure_future(self._dispatch(handle, frame))
        try:
            await asyncio.wait({task, closing}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if not task.cancelled() and task.exception() is None:
            return task.result()
        return DispatchOutcome(
            reply=self._dispatcher.error_reply(f"command cancelled: {handle.close_reason}")
        )

    async def _dispatch(self, handle: ConnectionHandle, frame: bytes) -> DispatchOutcome:
        try:
            return await self._dispatcher.dispatch(handle, frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Dispatch failed on %s connection %d", self._name, handle.id)
            self._emit(RelayEventKind.ERROR, handle.id, error=str(e))
            return DispatchOutcome(reply=self._dispatcher.error_reply(str(e) or type(e).__name__))

    async def _terminate(self, handle: ConnectionHandle, reason: str) -> None:
        """Deregister, deactivate and close a connection (first caller wins)."""
        if self._registry.deregister(handle.id) is None:
            return
        await handle.close()
        self._emit(
            RelayEventKind.DISCONNECTED,
            handle.id,
            reason=reason,
            connection_seconds=round((datetime.now() - handle.connected_at).total_seconds()),
            remaining_clients=len(self._registry),
        )

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    def _emit(
        self,
        kind: RelayEventKind,
        connection_id: int | None = None,
        duration_ms: float | None = None,
        **detail: Any,
    ) -> None:
        event = RelayEvent(
            kind=kind,
            listener=self._name,
            connection_id=connection_id,
            duration_ms=duration_ms,
            detail=detail,
        )
        log_event(logger, event)
        if self._event_sink is None:
            return
        try:
            self._event_sink(event)
        except Exception:
            logger.exception("Event sink failed for %s", kind.value)


def build_servers(
    settings: Settings,
    event_sink: EventSink | None = None,
) -> list[RelayServer]:
    """Create a ``RelayServer`` for every enabled listener in ``settings``."""
    executor = CommandExecutor()
    servers: list[RelayServer] = []
    if settings.line.enabled:
        servers.append(RelayServer(
            LineDispatcher(executor, settings.relay),
            host=settings.line.host,
            port=settings.line.port,
            config=settings.relay,
            event_sink=event_sink,
        ))
    if settings.structured.enabled:
        servers.append(RelayServer(
            StructuredDispatcher(executor, settings.relay),
            host=settings.structured.host,
            port=settings.structured.port,
            config=settings.relay,
            event_sink=event_sink,
        ))
    return servers
