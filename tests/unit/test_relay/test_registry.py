"""Tests for the ConnectionRegistry and ConnectionHandle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from cmdrelay.domain.models import TargetBinding
from cmdrelay.relay.connection import ConnectionHandle
from cmdrelay.relay.registry import ConnectionRegistry


def make_handle(connection_id: int, drain_error: Exception | None = None) -> ConnectionHandle:
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.get_extra_info.return_value = ("127.0.0.1", 40000 + connection_id)
    writer.is_closing.return_value = False
    writer.drain = AsyncMock(side_effect=drain_error)
    writer.wait_closed = AsyncMock()
    return ConnectionHandle(connection_id, writer, write_timeout=1.0)


class TestConnectionHandle:
    def test_identity_from_peer(self, handle: ConnectionHandle) -> None:
        assert handle.id == 1
        assert handle.peer_address == "10.0.0.7"
        assert handle.peer_port == 51234
        assert handle.active is True
        assert handle.target is None

    def test_deactivate_flips_once(self, handle: ConnectionHandle) -> None:
        assert handle.deactivate() is True
        assert handle.deactivate() is False
        assert handle.active is False

    def test_rebind_overwrites(self, handle: ConnectionHandle) -> None:
        handle.bind_target(TargetBinding(address="10.0.0.5", port=5555))
        handle.bind_target(TargetBinding(address="10.0.0.6", port=6666))
        assert handle.target == TargetBinding(address="10.0.0.6", port=6666)

    def test_touch_updates_last_activity(self, handle: ConnectionHandle) -> None:
        before = handle.last_activity_at
        handle.touch()
        assert handle.last_activity_at >= before

    @pytest.mark.asyncio
    async def test_send_writes_and_drains(
        self, handle: ConnectionHandle, mock_writer: MagicMock
    ) -> None:
        assert await handle.send(b"PONG\n") is True
        mock_writer.write.assert_called_once_with(b"PONG\n")
        mock_writer.drain.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_after_deactivate_is_skipped(
        self, handle: ConnectionHandle, mock_writer: MagicMock
    ) -> None:
        handle.deactivate()
        assert await handle.send(b"PONG\n") is False
        mock_writer.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_failure_returns_false(self) -> None:
        h = make_handle(3, drain_error=ConnectionResetError("reset"))
        assert await h.send(b"x\n") is False

    def test_info_snapshot(self, handle: ConnectionHandle) -> None:
        info = handle.info()
        assert info.id == 1
        assert info.peer_address == "10.0.0.7"
        assert info.duration_seconds >= 0

    def test_request_close_keeps_first_reason(self, handle: ConnectionHandle) -> None:
        assert handle.closing is False
        assert handle.request_close("closed by peer") is True
        assert handle.request_close("server shutdown") is False
        assert handle.closing is True
        assert handle.close_reason == "closed by peer"

    @pytest.mark.asyncio
    async def test_wait_closing(self, handle: ConnectionHandle) -> None:
        waiter = asyncio.create_task(handle.wait_closing())
        await asyncio.sleep(0)
        assert not waiter.done()
        handle.request_close("idle timeout")
        await asyncio.wait_for(waiter, timeout=1.0)

    def test_abort_requests_close(self, handle: ConnectionHandle, mock_writer: MagicMock) -> None:
        mock_writer.transport.is_closing.return_value = False
        handle.abort("write failed")
        assert handle.close_reason == "write failed"
        mock_writer.transport.abort.assert_called_once_with()


class TestRegistry:
    def test_register_and_list(self) -> None:
        registry = ConnectionRegistry()
        registry.register(make_handle(2))
        registry.register(make_handle(1))
        assert [h.id for h in registry.list()] == [1, 2]
        assert len(registry) == 2
        assert 1 in registry

    def test_register_duplicate_rejected(self) -> None:
        registry = ConnectionRegistry()
        registry.register(make_handle(1))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(make_handle(1))

    def test_register_inactive_rejected(self) -> None:
        registry = ConnectionRegistry()
        h = make_handle(1)
        h.deactivate()
        with pytest.raises(ValueError, match="inactive"):
            registry.register(h)

    def test_deregister_deactivates_once(self) -> None:
        registry = ConnectionRegistry()
        h = make_handle(1)
        registry.register(h)
        assert registry.deregister(1) is h
        assert h.active is False
        assert registry.deregister(1) is None
        assert len(registry) == 0

    def test_list_is_a_snapshot(self) -> None:
        registry = ConnectionRegistry()
        registry.register(make_handle(1))
        snapshot = registry.list()
        registry.register(make_handle(2))
        registry.deregister(1)
        assert [h.id for h in snapshot] == [1]

    def test_listed_handles_are_active(self) -> None:
        registry = ConnectionRegistry()
        for i in range(1, 4):
            registry.register(make_handle(i))
        registry.deregister(2)
        assert all(h.active for h in registry.list())


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_counts_successful_deliveries(self) -> None:
        registry = ConnectionRegistry()
        for i in range(1, 4):
            registry.register(make_handle(i))
        assert await registry.broadcast(b"BROADCAST: x\n") == 3

    @pytest.mark.asyncio
    async def test_failed_write_does_not_abort_broadcast(self) -> None:
        registry = ConnectionRegistry()
        good_a = make_handle(1)
        bad = make_handle(2, drain_error=BrokenPipeError("gone"))
        good_b = make_handle(3)
        for h in (good_a, bad, good_b):
            registry.register(h)

        failed: list[int] = []
        sent = await registry.broadcast(b"BROADCAST: x\n", on_failure=lambda h: failed.append(h.id))

        assert sent == 2
        assert failed == [2]

    @pytest.mark.asyncio
    async def test_empty_registry(self) -> None:
        assert await ConnectionRegistry().broadcast(b"BROADCAST: x\n") == 0
