"""Core domain models for the cmdrelay system.

These models represent the data flowing through the relay: results of
executed commands, the downstream target a structured session is bound
to, the status snapshot exposed to the admin API, and the protocol
events reported to the logging collaborator.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ServerState(str, enum.Enum):
    """Lifecycle state of a relay listener."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class RelayEventKind(str, enum.Enum):
    """Kinds of protocol events emitted to the logging collaborator."""

    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"
    CONNECTED = "connected"
    COMMAND_RECEIVED = "command_received"
    COMMAND_RESULT = "command_result"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    ERROR = "error"
    BROADCAST = "broadcast"
    BIND = "bind"


# ---------------------------------------------------------------------------
# Execution Models
# ---------------------------------------------------------------------------


class ExecutionResult(BaseModel):
    """Outcome of a single external command invocation."""

    model_config = ConfigDict(frozen=True)

    ok: bool = Field(description="True when the process spawned and exited with status 0")
    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error")
    exit_code: int | None = Field(
        default=None, description="Process exit status, None if it never ran to completion"
    )
    duration_ms: float = Field(default=0.0, ge=0.0, description="Wall-clock execution time")
    timed_out: bool = Field(default=False, description="Whether the process was killed on timeout")
    error: str | None = Field(
        default=None, description="Spawn failure or timeout description"
    )

    @property
    def message(self) -> str:
        """Human-readable failure description (empty on success)."""
        if self.ok:
            return ""
        if self.error:
            return self.error
        detail = self.stderr.strip()
        if detail:
            return f"exit status {self.exit_code}: {detail}"
        return f"exit status {self.exit_code}"


class TargetBinding(BaseModel):
    """Downstream device target a structured session is bound to."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(min_length=1, description="Device address (IP or hostname)")
    port: int = Field(ge=1, le=65535, description="Device debug port")

    @property
    def connect_key(self) -> str:
        """The ``address:port`` form used on the device tool's command line."""
        return f"{self.address}:{self.port}"


# ---------------------------------------------------------------------------
# Status / Event Models
# ---------------------------------------------------------------------------


class ConnectionInfo(BaseModel):
    """Read-only view of one live connection for status reporting."""

    model_config = ConfigDict(frozen=True)

    id: int
    peer_address: str
    peer_port: int
    connected_at: datetime
    duration_seconds: int = Field(ge=0)
    target: TargetBinding | None = None


class RelayStatus(BaseModel):
    """Snapshot returned by ``RelayServer.get_status()``."""

    is_running: bool
    total_clients: int = Field(ge=0)
    active_clients: list[ConnectionInfo] = Field(default_factory=list)


class RelayEvent(BaseModel):
    """A protocol event reported to the structured-logging collaborator."""

    model_config = ConfigDict(frozen=True)

    kind: RelayEventKind
    listener: str = Field(default="", description="Name of the listener that emitted the event")
    connection_id: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)
    duration_ms: float | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
