"""Redis key-value storage backend."""

from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tentropy_core.exceptions import StoreUnavailableError

UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisKVStore:
    """Redis-backed key-value store shared by every server instance.

    ``add`` maps to ``SET key value NX EX ttl`` and is atomic across
    processes. Connection problems surface as StoreUnavailableError so
    callers can decide whether to degrade.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize Redis KV store.

        Args:
            redis_url: Connection URL (redis://host:port/db)
            client: Pre-built async client (takes precedence over redis_url)
            **kwargs: Ignored
        """
        if client is None:
            if not redis_url:
                raise ValueError(
                    "RedisKVStore requires redis_url. "
                    "Use 'memory' backend for development."
                )
            client = redis.from_url(redis_url)
        self.client = client

    async def get(self, key: str) -> bytes | None:
        """Get a value by key."""
        try:
            return await self.client.get(key)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Redis GET failed: {e}") from e

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        """Set a value with optional TTL in seconds."""
        try:
            await self.client.set(key, value, ex=ttl or None)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Redis SET failed: {e}") from e

    async def add(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Set a value only if the key is absent."""
        try:
            created = await self.client.set(key, value, ex=ttl or None, nx=True)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Redis SET NX failed: {e}") from e
        return bool(created)

    async def delete(self, key: str) -> None:
        """Delete a key."""
        try:
            await self.client.delete(key)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Redis DEL failed: {e}") from e

    async def list(self, prefix: str) -> list[str]:
        """List keys matching a prefix."""
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Redis SCAN failed: {e}") from e
        return [k.decode() if isinstance(k, bytes) else k for k in keys]

    async def close(self) -> None:
        """Close the connection pool."""
        await self.client.aclose()
