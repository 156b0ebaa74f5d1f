"""Image build and container run for a single preview build attempt."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from pullpreview.config import Settings, settings
from pullpreview.errors import BuildFailedError, PreviewError, RunFailedError
from pullpreview.events.publisher import LOG_EVENT
from pullpreview.managers.naming import derive_container_name

if TYPE_CHECKING:
    from pullpreview.events.publisher import EventPublisher
    from pullpreview.managers.container_runtime import ContainerRuntime
    from pullpreview.managers.port_allocator import PortAllocator
    from pullpreview.managers.process_runner import ProcessRunner
    from pullpreview.models.preview import Preview, Project
    from pullpreview.storage.preview_store import PreviewStore

logger = structlog.get_logger()

# Docker CLI output when the published host port is taken
PORT_IN_USE_MARKERS = (
    "port is already allocated",
    "address already in use",
)


class BuildLog:
    """Accumulated output of one build attempt.

    Every chunk is kept verbatim in arrival order and forwarded to observers
    of the preview as it arrives.
    """

    def __init__(self, preview_id: str, publisher: EventPublisher) -> None:
        self.preview_id = preview_id
        self._publisher = publisher
        self._chunks: list[str] = []
        self._size = 0

    async def append(self, chunk: str) -> None:
        self._chunks.append(chunk)
        self._size += len(chunk)
        await self._publisher.publish_scoped(
            self.preview_id, LOG_EVENT, {"previewId": self.preview_id, "chunk": chunk}
        )

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def size(self) -> int:
        return self._size

    def text_since(self, offset: int) -> str:
        """Output appended after the log had `offset` characters."""
        return self.text[offset:]


class BuildExecutor:
    """Builds an image from a source tree and runs it on a host port."""

    def __init__(
        self,
        store: PreviewStore,
        allocator: PortAllocator,
        runtime: ContainerRuntime,
        runner: ProcessRunner,
        config: Settings | None = None,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._runtime = runtime
        self._runner = runner
        self._config = config or settings

    def preview_url(self, port: int) -> str:
        """Externally reachable address of a preview on a host port."""
        return f"{self._config.preview_scheme}://{self._config.preview_host}:{port}"

    def container_name(self, project: Project, preview: Preview) -> str:
        """Container name of the preview's current build attempt."""
        return derive_container_name(
            project, preview.pr_number, preview.build_number, self._config.container_prefix
        )

    async def build(
        self,
        project: Project,
        preview: Preview,
        source_path: Path,
        log: BuildLog,
    ) -> str:
        """Build and run the preview, returning its URL.

        The chosen port and container name are persisted as soon as they are
        known. On failure the log keeps everything written so far.

        Raises:
            PortExhaustedError: No host port available.
            BuildFailedError: The image build failed.
            RunFailedError: The container could not be started.
        """
        port = await self._resolve_port(preview, log)
        await self._store.update_preview(preview.id, port=port)

        name = self.container_name(project, preview)
        await self._store.update_preview(preview.id, container_name=name)
        await self._runtime.remove_quietly(name)

        # One image tag per attempt, named like its container
        image = name
        await self._build_image(preview.id, image, source_path, log)
        port = await self._run_container(preview.id, name, image, port, log)

        url = self.preview_url(port)
        logger.info(
            "Preview container running",
            preview_id=preview.id,
            container_name=name,
            port=port,
            url=url,
        )
        return url

    async def _resolve_port(self, preview: Preview, log: BuildLog) -> int:
        if preview.port is not None:
            if not await self._allocator.is_held(preview.port):
                await log.append(f"\nReusing host port {preview.port}\n")
                return preview.port
            logger.info(
                "Previously reserved port is busy, allocating a new one",
                preview_id=preview.id,
                port=preview.port,
            )
        port = await self._allocator.allocate()
        await log.append(f"\nAllocated host port {port}\n")
        return port

    async def _build_image(
        self, preview_id: str, image: str, source_path: Path, log: BuildLog
    ) -> None:
        exit_status = await self._docker(
            preview_id,
            ["build", "-t", image, "-f", str(self._config.dockerfile), str(source_path)],
            log,
            BuildFailedError,
        )
        if exit_status != 0:
            raise BuildFailedError(f"Image build failed with exit code {exit_status}")

    async def _run_container(
        self, preview_id: str, name: str, image: str, port: int, log: BuildLog
    ) -> int:
        """Start the container, retrying once on a fresh port if the host port is taken."""
        retried = False
        while True:
            offset = log.size
            exit_status = await self._docker(
                preview_id,
                [
                    "run",
                    "-d",
                    "--name",
                    name,
                    "--label",
                    f"pullpreview.preview_id={preview_id}",
                    "-p",
                    f"{port}:{self._config.container_port}",
                    image,
                ],
                log,
                RunFailedError,
            )
            if exit_status == 0:
                return port

            output = log.text_since(offset).lower()
            port_in_use = any(marker in output for marker in PORT_IN_USE_MARKERS)
            if not port_in_use or retried:
                raise RunFailedError(
                    f"Container start failed with exit code {exit_status}",
                    port_in_use=port_in_use,
                )

            retried = True
            logger.warning(
                "Host port taken at run time, retrying", preview_id=preview_id, port=port
            )
            # docker run leaves a created container behind when the start fails
            await self._runtime.remove_quietly(name)
            port = await self._allocator.allocate(exclude={port})
            await self._store.update_preview(preview_id, port=port)
            await log.append(f"\nHost port was taken, retrying on port {port}\n")

    async def _docker(
        self,
        preview_id: str,
        args: list[str],
        log: BuildLog,
        error_type: type[PreviewError],
    ) -> int:
        command = [self._config.docker_binary, *args]
        await log.append(f"\n> {shlex.join(command)}\n")
        try:
            return await self._runner.execute(
                command,
                log.append,
                key=preview_id,
                timeout=self._config.build_timeout_seconds,
            )
        except OSError as e:
            raise error_type(f"Failed to run {self._config.docker_binary}: {e}") from e
