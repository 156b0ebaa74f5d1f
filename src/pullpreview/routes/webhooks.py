"""GitHub webhook receiver."""

import hashlib
import hmac
import json
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, status

from pullpreview.deps import Config, Orchestrator, Store
from pullpreview.errors import PreviewDeletedError
from pullpreview.managers.lifecycle import pull_request_ref

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

BUILD_ACTIONS = frozenset({"opened", "reopened", "synchronize"})


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a GitHub `X-Hub-Signature-256` header against the raw body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len("sha256=") :], expected)


@router.post("/github", status_code=status.HTTP_202_ACCEPTED)
async def github_webhook(
    request: Request,
    config: Config,
    store: Store,
    orchestrator: Orchestrator,
    x_github_event: Annotated[str | None, Header(alias="X-GitHub-Event")] = None,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
) -> dict[str, str]:
    """Start or tear down previews in response to pull request events."""
    body = await request.body()
    if config.webhook_secret and not verify_signature(
        body, x_hub_signature_256, config.webhook_secret
    ):
        logger.warning("Rejected webhook with invalid signature", github_event=x_github_event)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload: dict[str, Any] = json.loads(body)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload"
        ) from e

    if x_github_event != "pull_request":
        return {"status": "ignored"}

    action = payload.get("action")
    repository = payload.get("repository") or {}
    pr_number = payload.get("number") or (payload.get("pull_request") or {}).get("number")
    owner = (repository.get("owner") or {}).get("login")
    name = repository.get("name")
    if not (owner and name and isinstance(pr_number, int)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed pull_request payload"
        )

    project = await store.find_project_by_repo(owner, name)
    if project is None:
        logger.info("Webhook for unregistered repository", repo=f"{owner}/{name}")
        return {"status": "ignored"}

    logger.info(
        "Pull request event", project_id=project.id, pr_number=pr_number, action=action
    )
    if action in BUILD_ACTIONS:
        try:
            await orchestrator.start_build(project, pr_number, pull_request_ref(pr_number))
        except PreviewDeletedError:
            logger.info(
                "Ignoring build for deleted preview", project_id=project.id, pr_number=pr_number
            )
            return {"status": "ignored"}
        return {"status": "accepted"}

    if action == "closed":
        await orchestrator.handle_pr_closed(project, pr_number)
        return {"status": "accepted"}

    return {"status": "ignored"}
