"""Pullpreview service configuration."""

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_HOST_PORT = 1024
MAX_HOST_PORT = 65535

# Build template shipped with the package
DEFAULT_DOCKERFILE = Path(__file__).parent / "templates" / "vite.Dockerfile"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PULLPREVIEW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Record store
    redis_url: str = "redis://localhost:6379"

    # Internal service authentication (gateway -> pullpreview)
    internal_service_token: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]

    # GitHub
    webhook_secret: str = ""  # Empty disables signature verification
    github_token: str | None = None
    git_base_url: str = "https://github.com"

    # Working directory for temporary clones
    workdir: str = Field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "pullpreview"))

    # Host port allocation (inclusive range)
    port_range_min: int = 40000
    port_range_max: int = 40999
    port_probe_host: str = "127.0.0.1"

    # Externally reachable address of running previews
    preview_scheme: str = "http"
    preview_host: str = "localhost"

    # Container build/run
    docker_binary: str = "docker"
    dockerfile_path: str = ""  # Empty uses the bundled template
    container_port: int = 80
    container_prefix: str = "pp"
    build_timeout_seconds: int = 1800

    # Sentry (reads from SENTRY_ env vars, not PULLPREVIEW_)
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(
        default=0.2, validation_alias="SENTRY_TRACES_SAMPLE_RATE"
    )

    @model_validator(mode="after")
    def _check_port_range(self) -> "Settings":
        """Reject port ranges that are inverted or outside unprivileged ports."""
        if not MIN_HOST_PORT <= self.port_range_min <= MAX_HOST_PORT:
            raise ValueError(f"port_range_min must be within {MIN_HOST_PORT}-{MAX_HOST_PORT}")
        if not MIN_HOST_PORT <= self.port_range_max <= MAX_HOST_PORT:
            raise ValueError(f"port_range_max must be within {MIN_HOST_PORT}-{MAX_HOST_PORT}")
        if self.port_range_min > self.port_range_max:
            raise ValueError("port_range_min must not exceed port_range_max")
        return self

    @property
    def dockerfile(self) -> Path:
        """Absolute path of the build template."""
        if not self.dockerfile_path:
            return DEFAULT_DOCKERFILE
        return Path(self.dockerfile_path).expanduser().resolve()


settings = Settings()
