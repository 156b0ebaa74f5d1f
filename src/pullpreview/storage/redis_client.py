"""Async Redis client wrapper."""

from __future__ import annotations

from typing import Any, cast

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RedisClient:
    """Async Redis client wrapper.

    Owned by the process entry point: whoever creates it is responsible for
    calling connect() before use and disconnect() on shutdown.
    """

    def __init__(self, url: str, decode_responses: bool = True) -> None:
        """Initialize Redis client.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
            decode_responses: Whether to decode responses as strings
        """
        self._url = url
        self._decode_responses = decode_responses
        self._client: Any = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is not None:
            return

        self._client = redis.from_url(  # type: ignore[no-untyped-call]
            self._url,
            decode_responses=self._decode_responses,
        )
        logger.info("Connected to Redis", url=self._url)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None

        logger.info("Disconnected from Redis")

    @property
    def client(self) -> Any:
        """Get the underlying Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def ping(self) -> bool:
        """Check that the server answers."""
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("Redis ping failed", url=self._url, error=str(e))
            return False

    # Key-value operations

    async def get(self, key: str) -> str | None:
        """Get a value by key."""
        result = await self.client.get(key)
        return cast("str | None", result)

    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        """Set a value. With nx=True only sets when the key does not exist."""
        result = await self.client.set(key, value, nx=nx)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        result = await self.client.delete(*keys)
        return cast("int", result)

    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        result = await self.client.exists(key)
        return bool(result)

    # Hash operations

    async def hget(self, name: str, key: str) -> str | None:
        """Get a single hash field."""
        result = await self.client.hget(name, key)
        return cast("str | None", result)

    async def hgetall(self, name: str) -> dict[str, str]:
        """Get all fields in a hash."""
        result = await self.client.hgetall(name)
        return cast("dict[str, str]", result)

    async def hset_many(self, name: str, mapping: dict[str, str]) -> int:
        """Set several hash fields in one command."""
        result = await self.client.hset(name, mapping=mapping)
        return cast("int", result)

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        """Atomically increment an integer hash field."""
        result = await self.client.hincrby(name, key, amount)
        return cast("int", result)

    # Scripting

    async def eval(self, script: str, keys: list[str], args: list[str]) -> Any:
        """Run a Lua script atomically on the server."""
        return await self.client.eval(script, len(keys), *keys, *args)

    # Set operations

    async def sadd(self, name: str, *values: str) -> int:
        """Add members to a set."""
        result = await self.client.sadd(name, *values)
        return cast("int", result)

    async def smembers(self, name: str) -> set[str]:
        """Get all members of a set."""
        result = await self.client.smembers(name)
        return cast("set[str]", result)
