"""Shared test fixtures for pullpreview tests."""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from pullpreview.config import Settings
from pullpreview.errors import ContainerRemoveError
from pullpreview.events.publisher import STATUS_UPDATE_EVENT
from pullpreview.managers.build_executor import BuildExecutor
from pullpreview.managers.lifecycle import PreviewOrchestrator
from pullpreview.managers.port_allocator import PortAllocator
from pullpreview.managers.source_provider import GitSourceProvider
from pullpreview.models.preview import Preview, PreviewStatus, Project
from pullpreview.storage.preview_store import MUTABLE_PREVIEW_FIELDS

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

    from pullpreview.managers.process_runner import OutputCallback
    from pullpreview.storage.redis_client import RedisClient

RUN_INTEGRATION_TESTS = os.getenv("RUN_INTEGRATION_TESTS", "false").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

TEST_MIN_PORT = 41000
TEST_MAX_PORT = 41009


# ============================================
# Record store
# ============================================


class MockPreviewStore:
    """In-memory preview store for unit tests without Redis."""

    def __init__(self) -> None:
        self.previews: dict[str, Preview] = {}
        self.projects: dict[str, Project] = {}

    async def get_preview(self, preview_id: str) -> Preview | None:
        preview = self.previews.get(preview_id)
        return preview.model_copy() if preview else None

    async def find_preview(self, project_id: str, pr_number: int) -> Preview | None:
        for preview in self.previews.values():
            if preview.project_id == project_id and preview.pr_number == pr_number:
                return preview.model_copy()
        return None

    async def upsert_preview(self, project_id: str, pr_number: int) -> Preview:
        existing = await self.find_preview(project_id, pr_number)
        if existing is not None:
            return existing
        preview = Preview(id=uuid.uuid4().hex, project_id=project_id, pr_number=pr_number)
        self.previews[preview.id] = preview
        return preview.model_copy()

    async def update_preview(self, preview_id: str, **fields: Any) -> Preview:
        unknown = set(fields) - MUTABLE_PREVIEW_FIELDS
        if unknown:
            raise ValueError(f"Cannot update preview fields: {sorted(unknown)}")
        if preview_id not in self.previews:
            raise KeyError(preview_id)
        self.previews[preview_id] = self.previews[preview_id].model_copy(update=fields)
        return self.previews[preview_id].model_copy()

    async def increment_build_number(self, preview_id: str) -> int:
        preview = self.previews[preview_id]
        self.previews[preview_id] = preview.model_copy(
            update={"build_number": preview.build_number + 1}
        )
        return preview.build_number + 1

    async def find_preview_by_port(
        self, port: int, exclude_deleted: bool = True
    ) -> Preview | None:
        for preview in self.previews.values():
            if preview.port != port:
                continue
            if exclude_deleted and not preview.is_active:
                continue
            return preview.model_copy()
        return None

    async def list_previews(self, project_id: str) -> list[Preview]:
        previews = [p.model_copy() for p in self.previews.values() if p.project_id == project_id]
        return sorted(previews, key=lambda p: p.pr_number)

    async def save_project(self, project: Project) -> None:
        self.projects[project.id] = project

    async def get_project(self, project_id: str) -> Project | None:
        return self.projects.get(project_id)

    async def find_project_by_repo(self, repo_owner: str, repo_name: str) -> Project | None:
        for project in self.projects.values():
            if (project.repo_owner.lower(), project.repo_name.lower()) == (
                repo_owner.lower(),
                repo_name.lower(),
            ):
                return project
        return None

    async def list_projects(self, user_id: str) -> list[Project]:
        projects = [p for p in self.projects.values() if p.user_id == user_id]
        return sorted(projects, key=lambda p: p.full_name)


@pytest.fixture
def mock_store() -> MockPreviewStore:
    """In-memory store shared by the components under test."""
    return MockPreviewStore()


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient, None]:
    """Real Redis client, only for integration tests."""
    from pullpreview.storage.redis_client import RedisClient

    client = RedisClient(REDIS_URL)
    await client.connect()
    await _flush_test_keys(client)
    yield client
    await _flush_test_keys(client)
    await client.disconnect()


async def _flush_test_keys(client: RedisClient) -> None:
    """Flush all preview and project keys from Redis."""
    redis = client.client
    for pattern in ("preview:*", "project:*"):
        cursor = 0
        while True:
            cursor, keys = await redis.scan(cursor=cursor, match=pattern, count=1000)
            if keys:
                await redis.delete(*keys)
            if cursor == 0:
                break


# ============================================
# Events
# ============================================


class RecordingPublisher:
    """Records every published event.

    When a store is attached, the stored status of the preview is captured at
    the moment each state update is published.
    """

    def __init__(self, store: MockPreviewStore | None = None) -> None:
        self.store = store
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.scoped: list[tuple[str, str, dict[str, Any]]] = []
        self.stored_status_at_publish: list[tuple[str, str]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.events.append((topic, payload))
        if self.store is not None and topic == STATUS_UPDATE_EVENT:
            stored = self.store.previews[payload["previewId"]]
            self.stored_status_at_publish.append((payload["status"], stored.status.value))

    async def publish_scoped(self, preview_id: str, event: str, payload: dict[str, Any]) -> None:
        self.scoped.append((preview_id, event, payload))

    def statuses(self, preview_id: str) -> list[str]:
        """Statuses broadcast for one preview, in order."""
        return [
            payload["status"]
            for topic, payload in self.events
            if topic == STATUS_UPDATE_EVENT and payload["previewId"] == preview_id
        ]

    def scoped_events(self, preview_id: str, event: str) -> list[dict[str, Any]]:
        return [p for pid, name, p in self.scoped if pid == preview_id and name == event]


@pytest.fixture
def publisher(mock_store: MockPreviewStore) -> RecordingPublisher:
    return RecordingPublisher(mock_store)


# ============================================
# Processes and containers
# ============================================


def command_verb(command: Sequence[str]) -> str:
    """Subcommand of a git/docker argv, skipping `git -C <path>`."""
    args = list(command[1:])
    if args[:1] == ["-C"]:
        args = args[2:]
    return args[0] if args else ""


class FakeProcessRunner:
    """Scripted stand-in for ProcessRunner.

    Responses are queued per subcommand (`clone`, `build`, `run`, ...);
    anything unscripted succeeds silently. Hooks run before a response is
    returned and may block to hold an attempt mid-flight.
    """

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.responses: dict[str, list[tuple[int, str]]] = {}
        self.errors: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[list[str]], Awaitable[None]]] = {}
        self.running: dict[str, int] = {}
        self.terminated: list[str] = []

    def script(self, verb: str, exit_status: int, output: str = "") -> None:
        self.responses.setdefault(verb, []).append((exit_status, output))

    def calls(self, verb: str) -> list[list[str]]:
        return [c for c in self.commands if command_verb(c) == verb]

    async def wait_for_calls(self, verb: str, count: int = 1) -> None:
        """Wait until `count` commands with this subcommand have started."""

        async def _poll() -> None:
            while len(self.calls(verb)) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout=5)

    async def execute(
        self,
        command: Sequence[str],
        on_output: OutputCallback,
        key: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> int:
        command = list(command)
        verb = command_verb(command)
        self.commands.append(command)
        if key is not None:
            self.running[key] = self.running.get(key, 0) + 1
        try:
            if verb in self.errors:
                raise self.errors[verb]
            if verb in self.hooks:
                await self.hooks[verb](command)
            queue = self.responses.get(verb)
            exit_status, output = queue.pop(0) if queue else (0, "")
            if output:
                await on_output(output)
            return exit_status
        finally:
            if key is not None:
                self.running[key] -= 1

    def is_running(self, key: str) -> bool:
        return self.running.get(key, 0) > 0

    def terminate(self, key: str) -> bool:
        if not self.is_running(key):
            return False
        self.terminated.append(key)
        return True


class FakeContainerRuntime:
    """Records container removals; names in `failing` cannot be removed.

    A non-zero `delay` makes every removal yield to the event loop first.
    """

    def __init__(self) -> None:
        self.removed: list[str] = []
        self.failing: set[str] = set()
        self.fail_all = False
        self.delay = 0.0

    async def remove(self, name: str) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all or name in self.failing:
            raise ContainerRemoveError(f"Failed to remove container {name}: daemon error")
        self.removed.append(name)
        return True

    async def remove_quietly(self, name: str) -> bool:
        try:
            return await self.remove(name)
        except ContainerRemoveError:
            return False

    async def ping(self) -> bool:
        return True


@pytest.fixture
def runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


# ============================================
# Components
# ============================================


@pytest.fixture
def test_config(tmp_path: Path) -> Settings:
    """Settings with a small port range and a throwaway workdir."""
    return Settings(
        environment="test",
        port_range_min=TEST_MIN_PORT,
        port_range_max=TEST_MAX_PORT,
        preview_host="previews.test",
        workdir=str(tmp_path / "work"),
        dockerfile_path=str(tmp_path / "preview.Dockerfile"),
        internal_service_token="test-service-token",
        webhook_secret="",
    )


@pytest.fixture
def bound_ports() -> set[int]:
    """Ports the fake OS reports as already bound."""
    return set()


@pytest.fixture
def allocator(
    mock_store: MockPreviewStore,
    test_config: Settings,
    bound_ports: set[int],
    monkeypatch: pytest.MonkeyPatch,
) -> PortAllocator:
    """Port allocator whose bind probe consults `bound_ports`."""
    allocator = PortAllocator(
        mock_store,  # type: ignore[arg-type]
        min_port=test_config.port_range_min,
        max_port=test_config.port_range_max,
    )
    monkeypatch.setattr(allocator, "_try_bind", lambda port: port not in bound_ports)
    return allocator


@pytest.fixture
def source(runner: FakeProcessRunner, test_config: Settings) -> GitSourceProvider:
    return GitSourceProvider(runner, workdir=test_config.workdir)  # type: ignore[arg-type]


@pytest.fixture
def executor(
    mock_store: MockPreviewStore,
    allocator: PortAllocator,
    runtime: FakeContainerRuntime,
    runner: FakeProcessRunner,
    test_config: Settings,
) -> BuildExecutor:
    return BuildExecutor(
        mock_store,  # type: ignore[arg-type]
        allocator,
        runtime,  # type: ignore[arg-type]
        runner,  # type: ignore[arg-type]
        test_config,
    )


@pytest.fixture
async def orchestrator(
    mock_store: MockPreviewStore,
    executor: BuildExecutor,
    source: GitSourceProvider,
    runtime: FakeContainerRuntime,
    runner: FakeProcessRunner,
    publisher: RecordingPublisher,
) -> AsyncGenerator[PreviewOrchestrator, None]:
    orchestrator = PreviewOrchestrator(
        store=mock_store,  # type: ignore[arg-type]
        executor=executor,
        source=source,
        runtime=runtime,  # type: ignore[arg-type]
        runner=runner,  # type: ignore[arg-type]
        publisher=publisher,
    )
    yield orchestrator
    await orchestrator.shutdown()


# ============================================
# Test Data Factories
# ============================================


@pytest.fixture
def test_user_id() -> str:
    return "test-user-123"


class PreviewFactory:
    """Factory for creating test projects and previews."""

    @staticmethod
    def create_project(
        project_id: str | None = None,
        repo_owner: str = "acme",
        repo_name: str = "storefront",
        user_id: str = "test-user-123",
    ) -> Project:
        return Project(
            id=project_id or f"proj-{uuid.uuid4().hex[:8]}",
            repo_owner=repo_owner,
            repo_name=repo_name,
            user_id=user_id,
        )

    @staticmethod
    def create_preview(
        project_id: str,
        pr_number: int = 7,
        status: PreviewStatus = PreviewStatus.LIVE,
        preview_id: str | None = None,
        **kwargs: Any,
    ) -> Preview:
        return Preview(
            id=preview_id or f"prev-{uuid.uuid4().hex[:8]}",
            project_id=project_id,
            pr_number=pr_number,
            status=status,
            **kwargs,
        )


@pytest.fixture
def factory() -> type[PreviewFactory]:
    return PreviewFactory


@pytest.fixture
async def project(mock_store: MockPreviewStore, factory: type[PreviewFactory]) -> Project:
    """A registered project owned by the test user."""
    project = factory.create_project(project_id="proj-1")
    await mock_store.save_project(project)
    return project


# ============================================
# HTTP
# ============================================


@pytest.fixture
def service_token(monkeypatch: pytest.MonkeyPatch) -> str:
    """Configure the internal service token so auth checks are enforced."""
    from pullpreview.config import settings

    token = "test-service-token"
    monkeypatch.setattr(settings, "internal_service_token", token)
    monkeypatch.setattr(settings, "webhook_secret", "")
    return token


@pytest.fixture
def mock_orchestrator() -> MagicMock:
    """Orchestrator double for route tests."""
    orchestrator = MagicMock()
    orchestrator.start_build = AsyncMock()
    orchestrator.rebuild = AsyncMock()
    orchestrator.delete_preview = AsyncMock()
    orchestrator.handle_pr_closed = AsyncMock(return_value=None)
    orchestrator.authorize = AsyncMock()
    return orchestrator


@pytest.fixture
def fastapi_app(
    test_config: Settings, mock_store: MockPreviewStore, mock_orchestrator: MagicMock
):
    """Application with the store and orchestrator replaced by test doubles."""
    from pullpreview.deps import get_orchestrator, get_store
    from pullpreview.main import create_app

    app = create_app(test_config)
    app.dependency_overrides[get_store] = lambda: mock_store
    app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator
    return app


@pytest.fixture
def fastapi_client(fastapi_app, service_token: str, test_user_id: str) -> TestClient:
    """TestClient sending the gateway headers. The lifespan is not run."""
    client = TestClient(fastapi_app)
    client.headers.update(
        {
            "X-Internal-Service-Token": service_token,
            "X-User-ID": test_user_id,
        }
    )
    return client
