"""Protocol dispatchers: turn inbound frames into replies.

Both dispatchers receive one complete frame at a time from the
connection's read loop and return exactly one ``DispatchOutcome``. A
connection processes its frames strictly in order, so replies are
emitted in the order commands were received.
"""

from __future__ import annotations

import json
import logging
import shlex
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from cmdrelay.config.settings import RelayConfig
from cmdrelay.domain.models import ExecutionResult, RelayEventKind, TargetBinding
from cmdrelay.relay.connection import ConnectionHandle
from cmdrelay.relay.executor import CommandExecutor
from cmdrelay.relay.protocol import (
    PONG,
    BindCommand,
    ControlVerb,
    HeartbeatCommand,
    ProtocolError,
    RelayExecuteCommand,
    ReplyTag,
    decode_structured,
    encode_structured,
    tagged_line,
)
from cmdrelay.relay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

# Logged command text is truncated to this many characters.
LOG_COMMAND_CHARS = 100

EventEmitter = Callable[..., None]


class DispatchOutcome(BaseModel):
    """What to write back for one frame, and whether to hang up after."""

    model_config = ConfigDict(frozen=True)

    reply: bytes | None = None
    close: bool = False


def _no_events(*args: Any, **kwargs: Any) -> None:
    return None


class Dispatcher(ABC):
    """Abstract per-connection protocol state machine.

    A ``RelayServer`` calls ``attach()`` once, then for each connection:
    ``greeting()`` on accept, ``dispatch()`` per inbound frame, and
    ``notice()`` for server-initiated lines (broadcast, timeout).
    """

    name: str = "relay"

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._config = config or RelayConfig()
        self._registry: ConnectionRegistry | None = None
        self._emit: EventEmitter = _no_events

    def attach(self, registry: ConnectionRegistry, emit: EventEmitter) -> None:
        """Connect the dispatcher to its server's registry and event sink."""
        self._registry = registry
        self._emit = emit

    @property
    def total_clients(self) -> int:
        return len(self._registry) if self._registry is not None else 0

    def greeting(self, handle: ConnectionHandle) -> bytes | None:
        """Bytes sent right after accept, if any."""
        return None

    @abstractmethod
    async def dispatch(self, handle: ConnectionHandle, frame: bytes) -> DispatchOutcome:
        """Handle one complete inbound frame."""
        ...

    @abstractmethod
    def notice(self, tag: ReplyTag, text: str) -> bytes:
        """Encode a server-initiated notice (broadcast, timeout, bye)."""
        ...

    @abstractmethod
    def error_reply(self, message: str) -> bytes:
        """Encode an error reply that keeps the connection open."""
        ...

    async def _run(
        self, handle: ConnectionHandle, argv: list[str], timeout: float | None
    ) -> ExecutionResult:
        """Execute ``argv`` unless the connection is already winding down."""
        if handle.closing:
            return ExecutionResult(ok=False, error=f"command cancelled: {handle.close_reason}")
        return await self._executor.execute(argv, timeout=timeout)

    def _emit_result(self, handle: ConnectionHandle, result: ExecutionResult, command: str) -> None:
        self._emit(
            RelayEventKind.COMMAND_RESULT,
            handle.id,
            duration_ms=result.duration_ms,
            command=command[:LOG_COMMAND_CHARS],
            ok=result.ok,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            output_length=len(result.stdout),
        )


class LineDispatcher(Dispatcher):
    """Newline-delimited text protocol.

    ``PING``, ``STATUS`` and ``DISCONNECT`` are answered by the relay.
    Any other line is split into an argument vector (shell-style quoting,
    no shell) and run by the executor. An empty line is a no-op that is
    answered with ``SUCCESS: `` without spawning anything, so every input
    line still gets exactly one reply line.
    """

    name = "line"

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        super().__init__(executor, config)
        self._verbs: dict[ControlVerb, Callable[[ConnectionHandle], DispatchOutcome]] = {
            ControlVerb.PING: self._ping,
            ControlVerb.STATUS: self._status,
            ControlVerb.DISCONNECT: self._disconnect,
        }

    def greeting(self, handle: ConnectionHandle) -> bytes | None:
        return tagged_line(
            ReplyTag.CONNECTED, f"{self._config.welcome_text} [client id: {handle.id}]"
        )

    def notice(self, tag: ReplyTag, text: str) -> bytes:
        return tagged_line(tag, text)

    def error_reply(self, message: str) -> bytes:
        return tagged_line(ReplyTag.ERROR, message)

    async def dispatch(self, handle: ConnectionHandle, frame: bytes) -> DispatchOutcome:
        line = frame.decode("utf-8", errors="replace").strip()
        self._emit(
            RelayEventKind.COMMAND_RECEIVED,
            handle.id,
            command=line[:LOG_COMMAND_CHARS],
            length=len(line),
        )

        verb = ControlVerb.parse(line)
        if verb is not None:
            return self._verbs[verb](handle)

        if not line:
            return DispatchOutcome(reply=tagged_line(ReplyTag.SUCCESS, ""))

        try:
            argv = shlex.split(line)
        except ValueError as e:
            return DispatchOutcome(reply=self.error_reply(f"invalid command line: {e}"))

        result = await self._run(handle, argv, self._config.command_timeout)
        self._emit_result(handle, result, line)
        return DispatchOutcome(reply=self._format_result(result))

    def _format_result(self, result: ExecutionResult) -> bytes:
        if not result.ok:
            return tagged_line(ReplyTag.ERROR, result.message)
        if result.stderr:
            return tagged_line(ReplyTag.STDERR, result.stderr)
        return tagged_line(ReplyTag.SUCCESS, result.stdout)

    def _ping(self, handle: ConnectionHandle) -> DispatchOutcome:
        return DispatchOutcome(reply=PONG)

    def _status(self, handle: ConnectionHandle) -> DispatchOutcome:
        status = {
            "clientId": handle.id,
            "connectTime": handle.connected_at.isoformat(),
            "totalClients": self.total_clients,
        }
        return DispatchOutcome(reply=f"STATUS: {json.dumps(status)}\n".encode("utf-8"))

    def _disconnect(self, handle: ConnectionHandle) -> DispatchOutcome:
        return DispatchOutcome(
            reply=tagged_line(ReplyTag.BYE, "client requested disconnect"), close=True
        )


class StructuredDispatcher(Dispatcher):
    """Newline-delimited JSON protocol for device-debug sessions.

    A connection first ``bind``s to a downstream target, after which
    ``relay_execute`` runs ``<tool> -t <address>:<port> <args...>``.
    Malformed frames get an error object and the connection stays open.
    """

    name = "structured"

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        super().__init__(executor, config)
        self._handlers: dict[type[BaseModel], Callable[[ConnectionHandle, Any], Awaitable[dict]]] = {
            BindCommand: self._bind,
            RelayExecuteCommand: self._relay_execute,
            HeartbeatCommand: self._heartbeat,
        }

    def notice(self, tag: ReplyTag, text: str) -> bytes:
        return encode_structured({"status": tag.value.lower(), "message": text})

    def error_reply(self, message: str) -> bytes:
        return encode_structured({"status": "error", "message": message})

    async def dispatch(self, handle: ConnectionHandle, frame: bytes) -> DispatchOutcome:
        try:
            command = decode_structured(frame)
        except ProtocolError as e:
            logger.debug("Bad frame on connection %d: %s", handle.id, e)
            self._emit(RelayEventKind.ERROR, handle.id, error=str(e), frame_length=len(frame))
            return DispatchOutcome(reply=self.error_reply(str(e)))

        self._emit(RelayEventKind.COMMAND_RECEIVED, handle.id, command=command.command)
        reply = await self._handlers[type(command)](handle, command)
        return DispatchOutcome(reply=encode_structured(reply))

    async def _bind(self, handle: ConnectionHandle, command: BindCommand) -> dict:
        target = TargetBinding(address=command.address, port=command.port)
        handle.bind_target(target)

        argv = [self._config.tool_path, "target", "connect", target.connect_key]
        result = await self._run(handle, argv, self._config.probe_timeout)
        self._emit(
            RelayEventKind.BIND,
            handle.id,
            duration_ms=result.duration_ms,
            target=target.connect_key,
            ok=result.ok,
        )
        if result.ok:
            return {"status": "success", "message": f"connected to {target.connect_key}"}
        return {"status": "error", "message": f"connection failed: {result.message}"}

    async def _relay_execute(self, handle: ConnectionHandle, command: RelayExecuteCommand) -> dict:
        target = handle.target
        if target is None:
            return {"status": "error", "message": "debug target not set"}

        argv = [self._config.tool_path, "-t", target.connect_key, *command.args]
        result = await self._run(handle, argv, self._config.command_timeout)
        self._emit_result(handle, result, " ".join(command.args))
        if result.ok:
            return {"status": "success", "output": result.stdout}
        return {"status": "error", "output": result.stderr or result.message}

    async def _heartbeat(self, handle: ConnectionHandle, command: HeartbeatCommand) -> dict:
        return {"status": "success", "message": "heartbeat"}
