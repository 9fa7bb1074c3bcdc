"""In-memory key-value storage."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class CacheEntry:
    """A stored value with optional expiration."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryKVStore:
    """In-memory key-value store.

    Suitable for development, tests and single-instance deployments. State
    is private to this process: two server instances each see their own
    store, so ``add`` is only atomic within one process.
    """

    def __init__(self, clock: Callable[[], float] = time.time, **kwargs: Any) -> None:
        """Initialize memory KV store.

        Args:
            clock: Returns the current time in seconds (injectable for tests)
            **kwargs: Ignored (for compatibility with other backends)
        """
        self._clock = clock
        self._data: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> CacheEntry | None:
        """Return the entry for key, dropping it if expired (lock held)."""
        entry = self._data.get(key)
        if entry is not None and entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> bytes | None:
        """Get a value by key."""
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        """Set a value with optional TTL in seconds."""
        async with self._lock:
            self._data[key] = CacheEntry(value=value, expires_at=self._expiry(ttl))

    async def add(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Set a value only if the key is absent or expired."""
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = CacheEntry(value=value, expires_at=self._expiry(ttl))
            return True

    async def delete(self, key: str) -> None:
        """Delete a key."""
        async with self._lock:
            self._data.pop(key, None)

    async def list(self, prefix: str) -> list[str]:
        """List live keys matching a prefix."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, v in self._data.items() if v.is_expired(now)]
            for k in expired:
                del self._data[k]
            return [k for k in self._data if k.startswith(prefix)]

    async def clear(self) -> None:
        """Clear all data. Useful for testing."""
        async with self._lock:
            self._data.clear()

    async def close(self) -> None:
        """Nothing to release."""
