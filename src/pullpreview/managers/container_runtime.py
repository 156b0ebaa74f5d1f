"""Docker SDK access for container cleanup and inspection."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import docker
import structlog
from docker.errors import APIError, DockerException, NotFound

from pullpreview.errors import ContainerRemoveError

if TYPE_CHECKING:
    from docker import DockerClient

logger = structlog.get_logger()


class ContainerRuntime:
    """Removes and inspects preview containers by name.

    The Docker client is created on first use. SDK calls block, so each one
    runs in a worker thread.
    """

    def __init__(self, client: DockerClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> DockerClient:
        """Docker client, connected from the environment on first use."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def remove(self, name: str) -> bool:
        """Force-remove a container. A missing container counts as removed.

        Returns:
            True if a container was removed, False if none existed

        Raises:
            ContainerRemoveError: Docker refused or could not be reached.
        """
        try:
            container = await asyncio.to_thread(self.client.containers.get, name)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            return False
        except (APIError, DockerException) as e:
            raise ContainerRemoveError(f"Failed to remove container {name}: {e}") from e

        logger.info("Container removed", container_name=name)
        return True

    async def remove_quietly(self, name: str) -> bool:
        """Best-effort removal: failures are logged and reported as False."""
        try:
            return await self.remove(name)
        except ContainerRemoveError as e:
            logger.warning(
                "Container removal failed, continuing", container_name=name, error=e.detail
            )
            return False

    async def ping(self) -> bool:
        """Check that the Docker daemon answers."""
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except DockerException as e:
            logger.warning("Docker daemon unreachable", error=str(e))
            return False
