"""Pullpreview data models."""

from pullpreview.models.preview import (
    ActionResponse,
    BuildOutcome,
    Preview,
    PreviewDetail,
    PreviewResponse,
    PreviewStatus,
    Project,
    ProjectCreate,
    ProjectWithPreviews,
)

__all__ = [
    "ActionResponse",
    "BuildOutcome",
    "Preview",
    "PreviewDetail",
    "PreviewResponse",
    "PreviewStatus",
    "Project",
    "ProjectCreate",
    "ProjectWithPreviews",
]
