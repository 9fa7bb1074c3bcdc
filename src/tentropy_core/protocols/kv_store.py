"""KVStore protocol for key-value storage backends."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class KVStore(Protocol):
    """Protocol for key-value storage backends (memory, Redis).

    ``add`` is the one operation that must be atomic across every process
    sharing the store: concurrent callers with the same key get exactly
    one ``True``.
    """

    async def get(self, key: str) -> bytes | None:
        """Get a value by key. Returns None if not found."""
        ...

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        """Set a value with optional TTL in seconds."""
        ...

    async def add(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Set a value only if the key is absent. Returns True if it was set."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a key. No-op if key doesn't exist."""
        ...

    async def list(self, prefix: str) -> list[str]:
        """List keys matching a prefix."""
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        ...
