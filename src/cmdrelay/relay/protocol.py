"""Wire vocabulary for the two relay protocols.

Line protocol (UTF-8, newline-terminated)::

    client -> server:  PING | STATUS | DISCONNECT | <command line>
    server -> client:  CONNECTED: ... | PONG | STATUS: {...} | BYE: ...
                       SUCCESS: ... | STDERR: ... | ERROR: ...
                       TIMEOUT: ... | BROADCAST: ...

Structured protocol: one JSON object per line in both directions::

    {"command": "bind", "address": "10.0.0.5", "port": 5555}
    {"command": "relay_execute", "args": ["shell", "ls"]}
    {"command": "heartbeat"}
"""

from __future__ import annotations

import enum
import json
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class ProtocolError(Exception):
    """Raised when an inbound frame cannot be decoded."""


# ---------------------------------------------------------------------------
# Line protocol
# ---------------------------------------------------------------------------


class ControlVerb(str, enum.Enum):
    """Reserved line-protocol verbs handled by the relay itself."""

    PING = "PING"
    STATUS = "STATUS"
    DISCONNECT = "DISCONNECT"

    @classmethod
    def parse(cls, line: str) -> ControlVerb | None:
        try:
            return cls(line)
        except ValueError:
            return None


class ReplyTag(str, enum.Enum):
    """Prefixes of server -> client lines."""

    CONNECTED = "CONNECTED"
    STATUS = "STATUS"
    BYE = "BYE"
    SUCCESS = "SUCCESS"
    STDERR = "STDERR"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"
    BROADCAST = "BROADCAST"


PONG = b"PONG\n"


def escape_line(text: str) -> str:
    """Fold command output onto a single line.

    Trailing newlines are dropped; backslashes are doubled and interior
    CR/LF become the two-character sequences ``\\r``/``\\n``.
    """
    text = text.rstrip("\r\n")
    return text.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n")


def tagged_line(tag: ReplyTag, text: str) -> bytes:
    """Encode ``<TAG>: <text>\\n``."""
    return f"{tag.value}: {escape_line(text)}\n".encode("utf-8")


class LineFramer:
    """Splits an inbound byte stream into newline-terminated frames.

    A trailing ``\\r`` is stripped from each frame. A frame longer than
    ``max_frame_bytes`` is reported as ``None`` in its position; when
    that many bytes accumulate without a newline the buffer is dropped
    up to the next newline.
    """

    def __init__(self, max_frame_bytes: int = 65536) -> None:
        self._max = max_frame_bytes
        self._buffer = bytearray()
        self._discarding = False

    def feed(self, data: bytes) -> list[bytes | None]:
        """Consume ``data``; return the frames it completed, in order."""
        frames: list[bytes | None] = []
        self._buffer.extend(data)
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            frame = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if self._discarding:
                # Tail of a frame that was already reported as too long.
                self._discarding = False
                continue
            if frame.endswith(b"\r"):
                frame = frame[:-1]
            frames.append(frame if len(frame) <= self._max else None)
        if len(self._buffer) > self._max:
            self._buffer.clear()
            if not self._discarding:
                frames.append(None)
                self._discarding = True
        return frames


# ---------------------------------------------------------------------------
# Structured protocol (discriminated union on "command")
# ---------------------------------------------------------------------------


class BindCommand(BaseModel):
    """Bind this connection to a downstream debug target."""

    model_config = ConfigDict(frozen=True)

    command: Literal["bind", "set_debug_info"]
    address: str = Field(min_length=1, validation_alias=AliasChoices("address", "ip"))
    port: int = Field(ge=1, le=65535)


class RelayExecuteCommand(BaseModel):
    """Run the device tool against the bound target with extra args."""

    model_config = ConfigDict(frozen=True)

    command: Literal["relay_execute", "hdc_execute"]
    args: list[str]


class HeartbeatCommand(BaseModel):
    """Liveness ping."""

    model_config = ConfigDict(frozen=True)

    command: Literal["heartbeat"]


StructuredCommand = Annotated[
    Union[BindCommand, RelayExecuteCommand, HeartbeatCommand],
    Field(discriminator="command"),
]

_command_adapter: TypeAdapter[StructuredCommand] = TypeAdapter(StructuredCommand)

# Error message for each command when its fields fail validation.
FIELD_ERRORS: dict[type[BaseModel], str] = {
    BindCommand: "missing address or port",
    RelayExecuteCommand: "invalid command arguments",
    HeartbeatCommand: "invalid heartbeat",
}

KNOWN_COMMANDS: dict[str, type[BaseModel]] = {
    "bind": BindCommand,
    "set_debug_info": BindCommand,
    "relay_execute": RelayExecuteCommand,
    "hdc_execute": RelayExecuteCommand,
    "heartbeat": HeartbeatCommand,
}


class UnknownCommandError(ProtocolError):
    """The frame named a command the relay does not implement."""


class InvalidCommandError(ProtocolError):
    """The frame named a known command but its fields are invalid."""


def decode_structured(frame: bytes) -> BindCommand | RelayExecuteCommand | HeartbeatCommand:
    """Decode one JSON frame into a typed command.

    Raises:
        ProtocolError: Frame is not a JSON object.
        UnknownCommandError: ``command`` is missing or not recognised.
        InvalidCommandError: Required fields are missing or malformed.
    """
    try:
        payload = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError("invalid JSON") from e
    if not isinstance(payload, dict):
        raise ProtocolError("invalid JSON")

    name = payload.get("command")
    model = KNOWN_COMMANDS.get(name) if isinstance(name, str) else None
    if model is None:
        raise UnknownCommandError("unknown command")
    try:
        return _command_adapter.validate_python(payload)
    except ValueError as e:
        raise InvalidCommandError(FIELD_ERRORS[model]) from e


def encode_structured(reply: dict[str, Any]) -> bytes:
    """Encode one reply object as a JSON line."""
    return (json.dumps(reply, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
