"""Host port allocation for preview containers.

Ports are picked by a sequential scan that checks both the record store and
the operating system. This is only safe for a single orchestrator instance:
running several instances against the same range needs an external
distributed lock or a central allocator, which can replace this class as
long as it keeps the allocate()/is_held() signatures.
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog

from pullpreview.errors import PortExhaustedError

if TYPE_CHECKING:
    from pullpreview.storage.preview_store import PreviewStore

logger = structlog.get_logger()


class PortAllocator:
    """Finds free host ports not claimed by any active preview nor bound by the OS."""

    def __init__(
        self,
        store: PreviewStore,
        min_port: int,
        max_port: int,
        probe_host: str = "127.0.0.1",
    ) -> None:
        self._store = store
        self._min_port = min_port
        self._max_port = max_port
        self._probe_host = probe_host

    async def allocate(
        self,
        min_port: int | None = None,
        max_port: int | None = None,
        exclude: Iterable[int] = (),
    ) -> int:
        """Return the lowest port in the inclusive range passing every check.

        For each candidate: skip if an active preview holds it in the store,
        skip if binding a listener fails, then re-check the store to narrow the
        race with a concurrent reservation. The caller must persist the port
        immediately.

        Raises:
            PortExhaustedError: No port in the range is free.
        """
        low = self._min_port if min_port is None else min_port
        high = self._max_port if max_port is None else max_port
        skipped = set(exclude)

        for port in range(low, high + 1):
            if port in skipped:
                continue
            if await self._store.find_preview_by_port(port) is not None:
                continue
            if not await self._can_bind(port):
                logger.debug("Port bound outside the store, skipping", port=port)
                continue
            if await self._store.find_preview_by_port(port) is not None:
                logger.debug("Port claimed during probe, skipping", port=port)
                continue
            logger.info("Allocated host port", port=port)
            return port

        logger.warning("Port range exhausted", min_port=low, max_port=high)
        raise PortExhaustedError(low, high)

    async def is_held(self, port: int) -> bool:
        """True only if something on this host already has the port bound."""
        return not await self._can_bind(port)

    async def _can_bind(self, port: int) -> bool:
        return await asyncio.to_thread(self._try_bind, port)

    def _try_bind(self, port: int) -> bool:
        """Bind and immediately release a transient listener."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self._probe_host, port))
        except OSError:
            return False
        finally:
            sock.close()
        return True
