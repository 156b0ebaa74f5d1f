"""Pullpreview service routes."""

from pullpreview.routes.health import router as health_router
from pullpreview.routes.previews import router as previews_router
from pullpreview.routes.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "previews_router",
    "webhooks_router",
]
