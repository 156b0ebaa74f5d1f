"""Logging and Sentry setup for the pullpreview service."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from pullpreview import __version__

if TYPE_CHECKING:
    from pullpreview.config import Settings


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool | None = None,
    environment: str = "development",
) -> structlog.stdlib.BoundLogger:
    """
    Configure stdlib logging and structlog to work together.

    Call this once at service startup, after init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level (name or number)
        json_format: Use JSON output (True) or console format (False).
                     If None, JSON is used everywhere except development.
        environment: Deployment environment used for format auto-detection

    Returns:
        Configured structlog logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    if json_format is None:
        json_format = environment != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    # structlog handles the actual formatting
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def init_sentry(config: Settings) -> bool:
    """Initialize Sentry for error tracking.

    Returns:
        True if Sentry was initialized, False if no DSN is configured
    """
    if not config.sentry_dsn:
        return False

    is_development = config.environment == "development"
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.environment,
        release=f"pullpreview@{__version__}",
        traces_sample_rate=1.0 if is_development else config.sentry_traces_sample_rate,
        integrations=[
            AsyncioIntegration(),
            FastApiIntegration(transaction_style="endpoint"),
            RedisIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="pullpreview",
        ignore_errors=[
            "ConnectionRefusedError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )
    sentry_sdk.set_tag("service", "pullpreview")
    return True
