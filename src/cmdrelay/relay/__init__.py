"""Connection-accepting, command-dispatching relay engine.

Public API:
    RelayServer -- Listener lifecycle (accept, idle timeout, shutdown)
    LineDispatcher -- Newline text protocol (PING/STATUS/DISCONNECT/commands)
    StructuredDispatcher -- Newline JSON protocol (bind/relay_execute/heartbeat)
    CommandExecutor -- Runs one external command with a timeout
    ConnectionRegistry -- Concurrency-safe table of live connections
"""

from cmdrelay.relay.connection import ConnectionHandle
from cmdrelay.relay.dispatcher import Dispatcher, LineDispatcher, StructuredDispatcher
from cmdrelay.relay.executor import CommandExecutor
from cmdrelay.relay.registry import ConnectionRegistry
from cmdrelay.relay.server import RelayError, RelayServer, RelayStartError, build_servers

__all__ = [
    "CommandExecutor",
    "ConnectionHandle",
    "ConnectionRegistry",
    "Dispatcher",
    "LineDispatcher",
    "RelayError",
    "RelayServer",
    "RelayStartError",
    "StructuredDispatcher",
    "build_servers",
]
