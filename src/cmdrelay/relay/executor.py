"""Stateless command executor.

Runs one external program from an argument vector (never through a
shell), captures stdout/stderr/exit status and enforces a timeout. The
spawned process is placed in its own session so that the whole process
group can be killed on timeout or when the calling task is cancelled,
which ties a command's lifetime to the connection that issued it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Sequence

from cmdrelay.domain.models import ExecutionResult
from cmdrelay.utils.aio import wait_within

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


class CommandExecutor:
    """Runs external commands with a timeout.

    Holds no per-call state, so one instance can be shared by every
    connection and invoked concurrently.

    Usage::

        executor = CommandExecutor()
        result = await executor.execute(["echo", "hi"], timeout=5.0)
        if result.ok:
            print(result.stdout)
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    async def execute(
        self,
        argv: Sequence[str],
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    ) -> ExecutionResult:
        """Run ``argv`` and wait at most ``timeout`` seconds for it.

        Never raises for command failures: spawn errors, non-zero exits
        and timeouts are all reported through the returned result. If
        the calling task is cancelled, the child is killed before the
        cancellation propagates.
        """
        if not argv:
            return ExecutionResult(ok=False, error="empty command")

        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.debug("Failed to spawn %s: %s", argv[0], e)
            return ExecutionResult(
                ok=False,
                error=f"failed to start {argv[0]}: {e.strerror or e}",
                duration_ms=_elapsed_ms(started),
            )

        try:
            stdout, stderr = await wait_within(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.debug("Killed pid %d after %.1fs timeout", proc.pid, timeout)
            return ExecutionResult(
                ok=False,
                timed_out=True,
                error=f"command timed out after {timeout:g}s",
                duration_ms=_elapsed_ms(started),
            )
        except asyncio.CancelledError:
            await asyncio.shield(_kill(proc))
            logger.debug("Killed pid %d on cancellation", proc.pid)
            raise

        return ExecutionResult(
            ok=proc.returncode == 0,
            stdout=stdout.decode(self._encoding, errors="replace"),
            stderr=stderr.decode(self._encoding, errors="replace"),
            exit_code=proc.returncode,
            duration_ms=_elapsed_ms(started),
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the process group of ``proc`` and reap it."""
    if proc.returncode is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
    try:
        await proc.wait()
    except ChildProcessError:
        pass


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0
