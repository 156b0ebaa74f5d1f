"""Project and preview models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PreviewStatus(str, Enum):
    """Preview lifecycle status.

    `deleted` is terminal: no transition leads out of it.
    """

    BUILDING = "building"
    LIVE = "live"
    ERROR = "error"
    DELETED = "deleted"


class Project(BaseModel):
    """A source repository registered for previews."""

    id: str
    repo_owner: str
    repo_name: str
    user_id: str

    @property
    def full_name(self) -> str:
        """Repository name in owner/name form."""
        return f"{self.repo_owner}/{self.repo_name}"


class Preview(BaseModel):
    """An ephemeral deployment of one pull request."""

    id: str
    project_id: str
    pr_number: int
    status: PreviewStatus = PreviewStatus.BUILDING
    url: str | None = None
    port: int | None = None
    container_name: str | None = None
    build_number: int = 0
    build_started_at: datetime | None = None
    build_completed_at: datetime | None = None
    build_logs: str = ""

    @property
    def is_active(self) -> bool:
        """Whether the preview still counts against port and name uniqueness."""
        return self.status != PreviewStatus.DELETED

    @property
    def build_duration_seconds(self) -> float | None:
        """Duration of the most recent build attempt, if it has both bounds."""
        if self.build_started_at is None or self.build_completed_at is None:
            return None
        return (self.build_completed_at - self.build_started_at).total_seconds()

    def to_event(self) -> dict[str, Any]:
        """State-update payload broadcast to observers."""
        return {
            "previewId": self.id,
            "projectId": self.project_id,
            "prNumber": self.pr_number,
            "status": self.status.value,
            "url": self.url,
            "port": self.port,
            "containerName": self.container_name,
            "buildNumber": self.build_number,
            "buildStartedAt": (
                self.build_started_at.isoformat() if self.build_started_at else None
            ),
            "buildCompletedAt": (
                self.build_completed_at.isoformat() if self.build_completed_at else None
            ),
            "buildDurationSeconds": self.build_duration_seconds,
        }


@dataclass
class BuildOutcome:
    """Result of a build attempt as seen by a synchronous caller."""

    ok: bool
    url: str | None = None
    error: str | None = None


# API response models


class PreviewResponse(BaseModel):
    """Preview summary without build logs."""

    id: str
    project_id: str
    pr_number: int
    status: PreviewStatus
    url: str | None = None
    port: int | None = None
    container_name: str | None = None
    build_number: int
    build_started_at: datetime | None = None
    build_completed_at: datetime | None = None
    build_duration_seconds: float | None = None

    @classmethod
    def from_preview(cls, preview: Preview) -> "PreviewResponse":
        """Build the response from a stored preview."""
        return cls(
            **preview.model_dump(exclude={"build_logs"}),
            build_duration_seconds=preview.build_duration_seconds,
        )


class PreviewDetail(PreviewResponse):
    """Preview with the logs of its most recent build attempt."""

    build_logs: str = ""

    @classmethod
    def from_preview(cls, preview: Preview) -> "PreviewDetail":
        """Build the response from a stored preview."""
        return cls(
            **preview.model_dump(),
            build_duration_seconds=preview.build_duration_seconds,
        )


class ProjectWithPreviews(BaseModel):
    """A project and all of its previews."""

    id: str
    repo_owner: str
    repo_name: str
    previews: list[PreviewResponse] = Field(default_factory=list)


class ActionResponse(BaseModel):
    """Result of a rebuild or delete request."""

    ok: bool
    url: str | None = None
    error: str | None = None


class ProjectCreate(BaseModel):
    """Request to register a repository for previews."""

    repo_owner: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    repo_name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
