"""Shared test fixtures for the cmdrelay test suite.

Provides common fixtures used across unit tests: relay configuration
tuned for fast tests, a recording event sink, mock executors, and a
helper for talking to a live listener over a real socket.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from cmdrelay.config.settings import RelayConfig
from cmdrelay.domain.models import ExecutionResult, RelayEvent
from cmdrelay.relay.connection import ConnectionHandle
from cmdrelay.relay.executor import CommandExecutor


# ---------------------------------------------------------------------------
# Configuration Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def relay_config() -> RelayConfig:
    """Relay settings with short timers so lifecycle tests stay fast."""
    return RelayConfig(
        idle_timeout=5.0,
        shutdown_grace=0.1,
        command_timeout=5.0,
        probe_timeout=5.0,
        write_timeout=1.0,
        tool_path="hdc",
    )


# ---------------------------------------------------------------------------
# Event Fixtures
# ---------------------------------------------------------------------------


class EventRecorder:
    """Collects relay events for later assertions."""

    def __init__(self) -> None:
        self.events: list[RelayEvent] = []

    def __call__(self, event: RelayEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [event.kind.value for event in self.events]


@pytest.fixture
def event_recorder() -> EventRecorder:
    return EventRecorder()


# ---------------------------------------------------------------------------
# Mock Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_executor() -> AsyncMock:
    """A CommandExecutor whose execute() succeeds with empty output."""
    executor = AsyncMock(spec=CommandExecutor)
    executor.execute.return_value = ExecutionResult(ok=True, exit_code=0, duration_ms=1.0)
    return executor


@pytest.fixture
def mock_writer() -> MagicMock:
    """A StreamWriter stand-in that records written bytes."""
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.get_extra_info.return_value = ("10.0.0.7", 51234)
    writer.is_closing.return_value = False
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return writer


@pytest.fixture
def handle(mock_writer: MagicMock) -> ConnectionHandle:
    return ConnectionHandle(1, mock_writer, write_timeout=1.0)


# ---------------------------------------------------------------------------
# Socket helpers
# ---------------------------------------------------------------------------


class RelayClient:
    """Minimal line-oriented TCP client for end-to-end tests."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer

    @classmethod
    async def connect(cls, port: int, host: str = "127.0.0.1") -> RelayClient:
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer)

    async def send(self, line: str) -> None:
        self.writer.write(line.encode("utf-8") + b"\n")
        await self.writer.drain()

    async def send_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def half_close(self) -> None:
        """Send EOF while keeping the read side open."""
        self.writer.write_eof()
        await self.writer.drain()

    async def read_line(self, timeout: float = 5.0) -> str:
        data = await asyncio.wait_for(self.reader.readline(), timeout=timeout)
        return data.decode("utf-8")

    async def read_eof(self, timeout: float = 5.0) -> bytes:
        """Read until the server closes the connection."""
        return await asyncio.wait_for(self.reader.read(), timeout=timeout)

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@pytest.fixture
def open_client():
    """Factory fixture: ``client = await open_client(port)``."""
    return RelayClient.connect
