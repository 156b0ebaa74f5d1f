"""Container naming for preview build attempts."""

import hashlib
import re

from pullpreview.models.preview import Project

PROJECT_DIGEST_LENGTH = 12

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def project_digest(project: Project) -> str:
    """Fixed-length prefix derived from the project's unique id."""
    return hashlib.sha256(project.id.encode("utf-8")).hexdigest()[:PROJECT_DIGEST_LENGTH]


def derive_container_name(
    project: Project,
    pr_number: int,
    build_number: int,
    prefix: str = "pp",
) -> str:
    """Deterministic container name for one build attempt.

    Every build attempt has its own build number, so every attempt gets a
    distinct name even when earlier attempts failed.
    """
    name = f"{prefix}-{project_digest(project)}-pr{pr_number}-b{build_number}"
    return _INVALID_CHARS.sub("-", name.lower())
