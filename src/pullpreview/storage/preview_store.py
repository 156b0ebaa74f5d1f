"""Redis-backed record store for projects and previews."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from pullpreview.models.preview import Preview, PreviewStatus, Project
from pullpreview.storage.redis_client import RedisClient

logger = structlog.get_logger()

# Fields callers may change through update_preview
MUTABLE_PREVIEW_FIELDS = frozenset(
    {
        "status",
        "url",
        "port",
        "container_name",
        "build_started_at",
        "build_completed_at",
        "build_logs",
    }
)

# Atomic compare-and-delete so a preview only drops an index it still owns
_DELETE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _preview_key(preview_id: str) -> str:
    return f"preview:{preview_id}"


def _pr_key(project_id: str, pr_number: int) -> str:
    return f"preview:pr:{project_id}:{pr_number}"


def _port_key(port: int) -> str:
    return f"preview:port:{port}"


def _project_previews_key(project_id: str) -> str:
    return f"project:{project_id}:previews"


def _project_key(project_id: str) -> str:
    return f"project:{project_id}"


def _repo_key(repo_owner: str, repo_name: str) -> str:
    return f"project:repo:{repo_owner.lower()}/{repo_name.lower()}"


def _user_projects_key(user_id: str) -> str:
    return f"project:user:{user_id}"


def _encode(value: Any) -> str:
    """Encode a field value for a Redis hash. Empty string means unset."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _decode_preview(data: dict[str, str]) -> Preview:
    values: dict[str, Any] = {k: (v if v != "" else None) for k, v in data.items()}
    values["build_logs"] = data.get("build_logs", "")
    values["build_number"] = data.get("build_number") or 0
    return Preview.model_validate(values)


class PreviewStore:
    """Record store for projects and previews.

    Each record is a Redis hash so individual fields can be updated without a
    read-modify-write of the whole record. Secondary keys index previews by
    (project, PR number) and by reserved host port.
    """

    def __init__(self, client: RedisClient) -> None:
        self._client = client

    # Previews

    async def get_preview(self, preview_id: str) -> Preview | None:
        """Load a preview by id."""
        data = await self._client.hgetall(_preview_key(preview_id))
        if not data:
            return None
        try:
            return _decode_preview(data)
        except ValidationError:
            logger.exception("Failed to decode preview from Redis", preview_id=preview_id)
            return None

    async def find_preview(self, project_id: str, pr_number: int) -> Preview | None:
        """Find the preview for a project's pull request."""
        preview_id = await self._client.get(_pr_key(project_id, pr_number))
        if not preview_id:
            return None
        return await self.get_preview(preview_id)

    async def upsert_preview(self, project_id: str, pr_number: int) -> Preview:
        """Return the preview for (project, PR), creating it in `building` if absent.

        Creation is claimed with SET NX on the (project, PR) key so two
        concurrent callers never create two records for the same pair.
        """
        new_id = uuid4().hex
        claimed = await self._client.set(_pr_key(project_id, pr_number), new_id, nx=True)
        if not claimed:
            existing_id = await self._client.get(_pr_key(project_id, pr_number))
            if existing_id:
                existing = await self.get_preview(existing_id)
                if existing is not None:
                    return existing
                new_id = existing_id

        preview = Preview(
            id=new_id,
            project_id=project_id,
            pr_number=pr_number,
            status=PreviewStatus.BUILDING,
        )
        await self._client.hset_many(
            _preview_key(preview.id),
            {field: _encode(value) for field, value in preview.model_dump().items()},
        )
        await self._client.sadd(_project_previews_key(project_id), preview.id)
        logger.info(
            "Preview created",
            preview_id=preview.id,
            project_id=project_id,
            pr_number=pr_number,
        )
        return preview

    async def update_preview(self, preview_id: str, **fields: Any) -> Preview:
        """Update individual preview fields and return the stored record.

        Setting `port` moves the port index; setting it to None releases it.

        Raises:
            KeyError: No such preview.
        """
        unknown = set(fields) - MUTABLE_PREVIEW_FIELDS
        if unknown:
            raise ValueError(f"Cannot update preview fields: {sorted(unknown)}")

        key = _preview_key(preview_id)
        if not await self._client.exists(key):
            raise KeyError(preview_id)

        if "port" in fields:
            current = await self._client.hget(key, "port")
            old_port = int(current) if current else None
            new_port = fields["port"]
            if old_port is not None and old_port != new_port:
                await self._release_port(old_port, preview_id)
            if new_port is not None:
                await self._client.set(_port_key(new_port), preview_id)

        if fields:
            await self._client.hset_many(
                key, {field: _encode(value) for field, value in fields.items()}
            )

        preview = await self.get_preview(preview_id)
        if preview is None:
            raise KeyError(preview_id)
        return preview

    async def increment_build_number(self, preview_id: str) -> int:
        """Atomically bump the build counter and return the new value."""
        return await self._client.hincrby(_preview_key(preview_id), "build_number", 1)

    async def find_preview_by_port(
        self, port: int, exclude_deleted: bool = True
    ) -> Preview | None:
        """Find the preview currently holding a host port."""
        preview_id = await self._client.get(_port_key(port))
        if not preview_id:
            return None
        preview = await self.get_preview(preview_id)
        # Stale index entry
        if preview is None or preview.port != port:
            return None
        if exclude_deleted and not preview.is_active:
            return None
        return preview

    async def list_previews(self, project_id: str) -> list[Preview]:
        """All previews of a project ordered by PR number."""
        previews = []
        for preview_id in await self._client.smembers(_project_previews_key(project_id)):
            preview = await self.get_preview(preview_id)
            if preview is not None:
                previews.append(preview)
        return sorted(previews, key=lambda p: p.pr_number)

    async def _release_port(self, port: int, preview_id: str) -> None:
        await self._client.eval(_DELETE_IF_OWNER, [_port_key(port)], [preview_id])

    # Projects

    async def save_project(self, project: Project) -> None:
        """Create or replace a project record and its indexes."""
        await self._client.hset_many(
            _project_key(project.id),
            {field: _encode(value) for field, value in project.model_dump().items()},
        )
        await self._client.set(_repo_key(project.repo_owner, project.repo_name), project.id)
        await self._client.sadd(_user_projects_key(project.user_id), project.id)

    async def get_project(self, project_id: str) -> Project | None:
        """Load a project by id."""
        data = await self._client.hgetall(_project_key(project_id))
        if not data:
            return None
        return Project.model_validate(data)

    async def find_project_by_repo(self, repo_owner: str, repo_name: str) -> Project | None:
        """Find a project by repository owner and name (case-insensitive)."""
        project_id = await self._client.get(_repo_key(repo_owner, repo_name))
        if not project_id:
            return None
        return await self.get_project(project_id)

    async def list_projects(self, user_id: str) -> list[Project]:
        """Projects owned by a user."""
        projects = []
        for project_id in await self._client.smembers(_user_projects_key(user_id)):
            project = await self.get_project(project_id)
            if project is not None:
                projects.append(project)
        return sorted(projects, key=lambda p: p.full_name)
