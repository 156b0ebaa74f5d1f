"""Preview lifecycle: build, rebuild and delete orchestration.

States are building, live, error and deleted. Every transition is persisted
before the matching state-update event is published. Within one preview only
a single build attempt runs at a time; different previews build
concurrently.

Status writes for a preview are serialized by a short transition lock and
re-read the stored status under it, so nothing moves a preview out of
`deleted` once a delete has been recorded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from pullpreview.errors import (
    BuildInProgressError,
    ForbiddenError,
    NotFoundError,
    PreviewDeletedError,
    PreviewError,
)
from pullpreview.events.publisher import LOG_ERROR_EVENT, LOG_FINISH_EVENT, STATUS_UPDATE_EVENT
from pullpreview.managers.build_executor import BuildLog
from pullpreview.models.preview import BuildOutcome, Preview, PreviewStatus, Project

if TYPE_CHECKING:
    from pathlib import Path

    from pullpreview.events.publisher import EventPublisher
    from pullpreview.managers.build_executor import BuildExecutor
    from pullpreview.managers.container_runtime import ContainerRuntime
    from pullpreview.managers.process_runner import ProcessRunner
    from pullpreview.managers.source_provider import GitSourceProvider
    from pullpreview.storage.preview_store import PreviewStore

logger = structlog.get_logger()


def pull_request_ref(pr_number: int) -> str:
    """Git ref of a pull request's head commit."""
    return f"refs/pull/{pr_number}/head"


class PreviewOrchestrator:
    """Owns preview status and drives build, rebuild and delete sequences."""

    def __init__(
        self,
        store: PreviewStore,
        executor: BuildExecutor,
        source: GitSourceProvider,
        runtime: ContainerRuntime,
        runner: ProcessRunner,
        publisher: EventPublisher,
    ) -> None:
        self._store = store
        self._executor = executor
        self._source = source
        self._runtime = runtime
        self._runner = runner
        self._publisher = publisher
        self._locks: dict[str, asyncio.Lock] = {}
        self._transition_locks: dict[str, asyncio.Lock] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _get_lock(self, preview_id: str) -> asyncio.Lock:
        if preview_id not in self._locks:
            self._locks[preview_id] = asyncio.Lock()
        return self._locks[preview_id]

    def _transition_lock(self, preview_id: str) -> asyncio.Lock:
        if preview_id not in self._transition_locks:
            self._transition_locks[preview_id] = asyncio.Lock()
        return self._transition_locks[preview_id]

    def _forget(self, preview_id: str) -> None:
        """Drop the locks of a deleted preview."""
        self._locks.pop(preview_id, None)
        self._transition_locks.pop(preview_id, None)

    def is_building(self, preview_id: str) -> bool:
        """Whether a build attempt for the preview is in flight."""
        lock = self._locks.get(preview_id)
        return lock is not None and lock.locked()

    # Public operations

    async def start_build(self, project: Project, pr_number: int, ref: str | None) -> Preview:
        """Create or refresh the preview of a pull request and build it.

        Returns once the preview is recorded; the build continues in the
        background and reports through events. A request arriving while an
        attempt is in flight queues behind it.

        Raises:
            PreviewDeletedError: The preview was deleted and accepts no builds.
        """
        preview = await self._store.upsert_preview(project.id, pr_number)
        if preview.status == PreviewStatus.DELETED:
            raise PreviewDeletedError(f"Preview for PR #{pr_number} is deleted")

        lock = self._get_lock(preview.id)
        if lock.locked():
            logger.info(
                "Build already in flight, queueing", preview_id=preview.id, pr_number=pr_number
            )
            self._spawn(self._queued_build(project, preview.id, ref))
            return preview

        await lock.acquire()
        try:
            preview = await self._begin_attempt(preview.id)
        except BaseException:
            lock.release()
            raise
        self._spawn(self._build_and_release(project, preview, ref, lock))
        return preview

    async def rebuild(self, preview_id: str, user_id: str | None = None) -> BuildOutcome:
        """Run a new build attempt for the preview and wait for its outcome.

        Raises:
            NotFoundError: Unknown preview or project.
            ForbiddenError: The user does not own the project.
            PreviewDeletedError: The preview is deleted.
            BuildInProgressError: An attempt is already running.
        """
        preview, project = await self._load(preview_id, user_id)
        if preview.status == PreviewStatus.DELETED:
            raise PreviewDeletedError("Deleted previews cannot be rebuilt")

        lock = self._get_lock(preview.id)
        if lock.locked():
            raise BuildInProgressError("A build is already running for this preview")

        async with lock:
            current = await self._begin_attempt(preview.id)
            return await self._run_attempt(project, current, pull_request_ref(current.pr_number))

    async def delete_preview(self, preview_id: str, user_id: str | None = None) -> Preview:
        """Delete a preview on user request.

        Raises:
            NotFoundError: Unknown preview or project.
            ForbiddenError: The user does not own the project.
        """
        preview, _project = await self._load(preview_id, user_id)
        return await self._delete(preview)

    async def handle_pr_closed(self, project: Project, pr_number: int) -> Preview | None:
        """Delete the preview of a closed pull request, if there is one."""
        preview = await self._store.find_preview(project.id, pr_number)
        if preview is None:
            logger.info("No preview for closed PR", project_id=project.id, pr_number=pr_number)
            return None
        return await self._delete(preview)

    async def authorize(self, preview_id: str, user_id: str) -> tuple[Preview, Project]:
        """Load a preview and its project, checking the user owns the project."""
        return await self._load(preview_id, user_id)

    async def wait_idle(self) -> None:
        """Wait until every background build has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background builds and wait for them to unwind."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator stopped", cancelled_builds=len(tasks))

    # Transitions

    async def _begin_attempt(self, preview_id: str) -> Preview:
        """(any) -> building: drop the old container and start a numbered attempt.

        Raises:
            PreviewDeletedError: The preview was deleted.
        """
        async with self._transition_lock(preview_id):
            preview = await self._store.get_preview(preview_id)
            if preview is None or preview.status == PreviewStatus.DELETED:
                raise PreviewDeletedError("Deleted previews cannot be rebuilt")

            if preview.container_name:
                await self._runtime.remove_quietly(preview.container_name)

            build_number = await self._store.increment_build_number(preview.id)
            preview = await self._store.update_preview(
                preview.id,
                status=PreviewStatus.BUILDING,
                url=None,
                container_name=None,
                build_started_at=datetime.now(UTC),
                build_completed_at=None,
                build_logs="",
            )
            logger.info(
                "Build attempt started",
                preview_id=preview.id,
                pr_number=preview.pr_number,
                build_number=build_number,
            )
            await self._emit_status(preview)
        return preview

    async def _run_attempt(
        self, project: Project, preview: Preview, ref: str | None
    ) -> BuildOutcome:
        """Clone, build and run; translate every failure into the error transition."""
        log = BuildLog(preview.id, self._publisher)
        source_path: Path | None = None
        try:
            source_path = await self._source.clone(
                project.repo_owner,
                project.repo_name,
                ref,
                on_output=log.append,
                key=preview.id,
            )
            url = await self._executor.build(project, preview, source_path, log)
        except PreviewError as e:
            return await self._fail_attempt(project, preview, log, e.detail)
        except Exception as e:
            logger.exception("Unexpected error during build", preview_id=preview.id)
            return await self._fail_attempt(project, preview, log, f"Unexpected error: {e}")
        finally:
            if source_path is not None:
                await self._source.discard(source_path)

        return await self._complete_attempt(project, preview, log, url)

    async def _complete_attempt(
        self, project: Project, preview: Preview, log: BuildLog, url: str
    ) -> BuildOutcome:
        """building -> live, unless the preview was deleted meanwhile."""
        async with self._transition_lock(preview.id):
            current = await self._store.get_preview(preview.id)
            if current is None or current.status == PreviewStatus.DELETED:
                await self._discard_attempt(project, preview)
                deleted = True
            else:
                deleted = False
                preview = await self._store.update_preview(
                    preview.id,
                    status=PreviewStatus.LIVE,
                    url=url,
                    build_logs=log.text,
                    build_completed_at=datetime.now(UTC),
                )
                logger.info(
                    "Preview live",
                    preview_id=preview.id,
                    url=url,
                    build_number=preview.build_number,
                    duration_seconds=preview.build_duration_seconds,
                )
                await self._emit_status(preview)
                await self._publisher.publish_scoped(
                    preview.id, LOG_FINISH_EVENT, {"previewId": preview.id, "url": url}
                )

        if deleted:
            self._forget(preview.id)
            return BuildOutcome(ok=False, error="Preview was deleted during the build")
        return BuildOutcome(ok=True, url=url)

    async def _fail_attempt(
        self, project: Project, preview: Preview, log: BuildLog, detail: str
    ) -> BuildOutcome:
        """building -> error: remove the attempt's container and release its port."""
        logger.warning(
            "Build attempt failed",
            preview_id=preview.id,
            build_number=preview.build_number,
            error=detail,
        )
        async with self._transition_lock(preview.id):
            current = await self._store.get_preview(preview.id)
            if current is None or current.status == PreviewStatus.DELETED:
                await self._discard_attempt(project, preview)
                deleted = True
            else:
                deleted = False
                await self._runtime.remove_quietly(
                    self._executor.container_name(project, preview)
                )
                preview = await self._store.update_preview(
                    preview.id,
                    status=PreviewStatus.ERROR,
                    url=None,
                    port=None,
                    container_name=None,
                    build_logs=f"{log.text}\n\nERROR:\n{detail}",
                    build_completed_at=datetime.now(UTC),
                )
                await self._emit_status(preview)
                await self._publisher.publish_scoped(
                    preview.id, LOG_ERROR_EVENT, {"previewId": preview.id, "message": detail}
                )

        if deleted:
            self._forget(preview.id)
        return BuildOutcome(ok=False, error=detail)

    async def _discard_attempt(self, project: Project, preview: Preview) -> None:
        """Undo what an attempt created after its preview was deleted mid-build.

        Called with the transition lock held.
        """
        logger.info("Preview deleted during build, discarding attempt", preview_id=preview.id)
        await self._runtime.remove_quietly(self._executor.container_name(project, preview))
        current = await self._store.get_preview(preview.id)
        if current is not None and (current.port is not None or current.container_name):
            await self._store.update_preview(preview.id, url=None, port=None, container_name=None)

    async def _delete(self, preview: Preview) -> Preview:
        """(any) -> deleted. Container removal is best-effort.

        Never waits for an in-flight build: its process group is killed and
        the attempt discards its own work once it sees the deletion.
        """
        async with self._transition_lock(preview.id):
            if self._runner.terminate(preview.id):
                logger.info(
                    "Terminated in-flight build for deleted preview", preview_id=preview.id
                )
            current = await self._store.get_preview(preview.id) or preview
            if current.container_name:
                await self._runtime.remove_quietly(current.container_name)

            preview = await self._store.update_preview(
                preview.id,
                status=PreviewStatus.DELETED,
                url=None,
                port=None,
                container_name=None,
                build_completed_at=datetime.now(UTC),
            )
            logger.info("Preview deleted", preview_id=preview.id, pr_number=preview.pr_number)
            await self._emit_status(preview)

        self._forget(preview.id)
        return preview

    # Helpers

    async def _load(self, preview_id: str, user_id: str | None) -> tuple[Preview, Project]:
        preview = await self._store.get_preview(preview_id)
        if preview is None:
            raise NotFoundError("Preview not found")
        project = await self._store.get_project(preview.project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if user_id is not None and project.user_id != user_id:
            raise ForbiddenError("Not allowed")
        return preview, project

    async def _queued_build(self, project: Project, preview_id: str, ref: str | None) -> None:
        async with self._get_lock(preview_id):
            try:
                preview = await self._begin_attempt(preview_id)
            except PreviewDeletedError:
                logger.info("Skipping queued build of deleted preview", preview_id=preview_id)
                skipped = True
            else:
                skipped = False
                await self._run_attempt(project, preview, ref)
        if skipped:
            self._forget(preview_id)

    async def _build_and_release(
        self, project: Project, preview: Preview, ref: str | None, lock: asyncio.Lock
    ) -> None:
        try:
            await self._run_attempt(project, preview, ref)
        finally:
            lock.release()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        # Keep a reference so the task is not garbage collected mid-build
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background build crashed", error=str(task.exception()))

    async def _emit_status(self, preview: Preview) -> None:
        await self._publisher.publish(STATUS_UPDATE_EVENT, preview.to_event())
