"""External process execution with streamed, merged output."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import signal
from collections.abc import Awaitable, Callable, Sequence

import structlog

logger = structlog.get_logger()

OutputCallback = Callable[[str], Awaitable[None]]

READ_CHUNK_SIZE = 4096
TIMEOUT_EXIT_STATUS = -1


class ProcessRunner:
    """Runs commands as asyncio subprocesses.

    stderr is merged into stdout so chunks reach the callback in arrival
    order. Processes started with a key run in their own session; only the
    most recent process per key is tracked, and terminate(key) signals its
    whole process group.
    """

    def __init__(self) -> None:
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    async def execute(
        self,
        command: Sequence[str],
        on_output: OutputCallback,
        key: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> int:
        """Run a command to completion and return its exit status.

        Raises:
            OSError: The executable could not be started.
        """
        logger.debug("Running command", executable=command[0], key=key)
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        if key is not None:
            self._processes[key] = process

        try:
            try:
                await asyncio.wait_for(self._pump(process, on_output), timeout)
            except TimeoutError:
                logger.warning(
                    "Command timed out", executable=command[0], key=key, timeout=timeout
                )
                self._signal_group(process, signal.SIGKILL)
                await process.wait()
                await on_output(f"\nCommand timed out after {timeout} seconds\n")
                return TIMEOUT_EXIT_STATUS
            return await process.wait()
        finally:
            if key is not None and self._processes.get(key) is process:
                del self._processes[key]

    async def _pump(self, process: asyncio.subprocess.Process, on_output: OutputCallback) -> None:
        if process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(READ_CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                await on_output(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            await on_output(tail)

    def is_running(self, key: str) -> bool:
        """Whether a tracked process for this key is still alive."""
        process = self._processes.get(key)
        return process is not None and process.returncode is None

    def terminate(self, key: str) -> bool:
        """Send SIGTERM to the process group tracked under key.

        Returns:
            True if a running process was signalled
        """
        if not self.is_running(key):
            return False
        process = self._processes[key]
        logger.info("Terminating process group", key=key, pid=process.pid)
        self._signal_group(process, signal.SIGTERM)
        return True

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, sig)
