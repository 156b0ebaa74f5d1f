"""Dependency injection for the pullpreview service."""

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from pullpreview.config import Settings, settings
from pullpreview.managers.lifecycle import PreviewOrchestrator
from pullpreview.storage.preview_store import PreviewStore

logger = structlog.get_logger()


def validate_internal_auth(
    x_internal_service_token: str | None = None,
    authorization: str | None = None,
) -> None:
    """Validate the shared service token sent by the gateway.

    The token is read from X-Internal-Service-Token or, failing that, from
    an Authorization: Bearer header.

    Args:
        x_internal_service_token: Service token header
        authorization: Bearer token header (alternative)
    """
    if not settings.internal_service_token:
        # Fail closed when no token is configured
        logger.error("Internal service token not configured, rejecting request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Service authentication not configured",
        )

    token = None
    if x_internal_service_token:
        token = x_internal_service_token
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service token",
        )

    if not secrets.compare_digest(token, settings.internal_service_token):
        logger.warning("Invalid internal service token received")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )


def verify_internal_auth(
    x_internal_service_token: Annotated[
        str | None, Header(alias="X-Internal-Service-Token")
    ] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Verify internal service-to-service authentication."""
    validate_internal_auth(x_internal_service_token, authorization)


def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """Extract the authenticated user's ID passed on by the gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user ID header",
        )
    return x_user_id


def get_config(request: Request) -> Settings:
    """Settings the application was created with."""
    config: Settings = request.app.state.config
    return config


def get_store(request: Request) -> PreviewStore:
    """Record store created by the application lifespan."""
    store: PreviewStore = request.app.state.store
    return store


def get_orchestrator(request: Request) -> PreviewOrchestrator:
    """Preview orchestrator created by the application lifespan."""
    orchestrator: PreviewOrchestrator = request.app.state.orchestrator
    return orchestrator


AuthenticatedUser = Annotated[str, Depends(get_user_id)]

InternalAuth = Annotated[None, Depends(verify_internal_auth)]

Config = Annotated[Settings, Depends(get_config)]

Store = Annotated[PreviewStore, Depends(get_store)]

Orchestrator = Annotated[PreviewOrchestrator, Depends(get_orchestrator)]
