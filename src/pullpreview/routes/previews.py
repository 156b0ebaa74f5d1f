"""Project and preview routes used by the dashboard."""

from typing import NoReturn
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from pullpreview.deps import AuthenticatedUser, Orchestrator, Store, verify_internal_auth
from pullpreview.errors import (
    BuildInProgressError,
    ForbiddenError,
    NotFoundError,
    PreviewDeletedError,
    PreviewError,
)
from pullpreview.models.preview import (
    ActionResponse,
    PreviewDetail,
    PreviewResponse,
    Project,
    ProjectCreate,
    ProjectWithPreviews,
)

logger = structlog.get_logger()

router = APIRouter(
    tags=["previews"],
    dependencies=[Depends(verify_internal_auth)],
)


def _raise_http(error: PreviewError) -> NoReturn:
    """Map orchestrator errors onto HTTP status codes."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ForbiddenError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, BuildInProgressError | PreviewDeletedError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=error.detail) from error


@router.get("/projects", response_model=list[ProjectWithPreviews])
async def list_projects(user_id: AuthenticatedUser, store: Store) -> list[ProjectWithPreviews]:
    """The caller's projects with all of their previews."""
    result = []
    for project in await store.list_projects(user_id):
        previews = await store.list_previews(project.id)
        result.append(
            ProjectWithPreviews(
                id=project.id,
                repo_owner=project.repo_owner,
                repo_name=project.repo_name,
                previews=[PreviewResponse.from_preview(p) for p in previews],
            )
        )
    return result


@router.post("/projects", response_model=Project, status_code=status.HTTP_201_CREATED)
async def create_project(
    request: ProjectCreate, user_id: AuthenticatedUser, store: Store
) -> Project:
    """Register a repository so its pull requests get previews."""
    existing = await store.find_project_by_repo(request.repo_owner, request.repo_name)
    if existing is not None:
        if existing.user_id != user_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Repository already registered",
            )
        return existing

    project = Project(
        id=uuid4().hex,
        repo_owner=request.repo_owner,
        repo_name=request.repo_name,
        user_id=user_id,
    )
    await store.save_project(project)
    logger.info("Project registered", project_id=project.id, repo=project.full_name)
    return project


@router.get("/previews/{preview_id}", response_model=PreviewDetail)
async def get_preview(
    preview_id: str, user_id: AuthenticatedUser, orchestrator: Orchestrator
) -> PreviewDetail:
    """Preview detail including the logs of its most recent build."""
    try:
        preview, _project = await orchestrator.authorize(preview_id, user_id)
    except PreviewError as e:
        _raise_http(e)
    return PreviewDetail.from_preview(preview)


@router.post("/previews/{preview_id}/rebuild", response_model=ActionResponse)
async def rebuild_preview(
    preview_id: str, user_id: AuthenticatedUser, orchestrator: Orchestrator
) -> ActionResponse | JSONResponse:
    """Rebuild a preview and wait for the attempt to finish."""
    try:
        outcome = await orchestrator.rebuild(preview_id, user_id)
    except PreviewError as e:
        _raise_http(e)

    if not outcome.ok:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ActionResponse(ok=False, error=outcome.error).model_dump(),
        )
    return ActionResponse(ok=True, url=outcome.url)


@router.post("/previews/{preview_id}/delete", response_model=ActionResponse)
async def delete_preview(
    preview_id: str, user_id: AuthenticatedUser, orchestrator: Orchestrator
) -> ActionResponse:
    """Delete a preview and remove its container."""
    try:
        await orchestrator.delete_preview(preview_id, user_id)
    except PreviewError as e:
        _raise_http(e)
    return ActionResponse(ok=True)
