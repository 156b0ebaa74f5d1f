"""Record store for projects and previews."""

from pullpreview.storage.preview_store import PreviewStore
from pullpreview.storage.redis_client import RedisClient

__all__ = ["PreviewStore", "RedisClient"]
