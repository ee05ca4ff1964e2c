"""Domain models for cmdrelay.

This package contains the core data structures, enumerations, and value
objects shared by the relay engine and the status API. All models use
Pydantic v2 for validation and serialization.
"""

from cmdrelay.domain.models import (
    ConnectionInfo,
    ExecutionResult,
    RelayEvent,
    RelayEventKind,
    RelayStatus,
    ServerState,
    TargetBinding,
)

__all__ = [
    "ConnectionInfo",
    "ExecutionResult",
    "RelayEvent",
    "RelayEventKind",
    "RelayStatus",
    "ServerState",
    "TargetBinding",
]
