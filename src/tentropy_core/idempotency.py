"""Idempotency guard for submissions.

A client attaches a random key to each submission. The first request with
a key claims it with an atomic set-if-absent; any other request carrying
the same key while the record exists is rejected, never queued or merged.
The record carries a TTL so a crashed worker cannot block a key forever.
"""

import json
import time
from dataclasses import dataclass
from enum import Enum

from tentropy_core.exceptions import StoreUnavailableError
from tentropy_core.observability import emit_counter, get_logger
from tentropy_core.protocols import KVStore

logger = get_logger(__name__)


class IdempotencyStatus(str, Enum):
    """Lifecycle marker stored in an idempotency record."""

    PENDING = "pending"
    TERMINAL = "terminal"


@dataclass
class IdempotencyOutcome:
    """Result of trying to claim a key."""

    acquired: bool
    existing_status: IdempotencyStatus | None = None

    @property
    def is_conflict(self) -> bool:
        return not self.acquired


class IdempotencyGuard:
    """Claims and releases submission keys in a shared KV store.

    Example:
        guard = IdempotencyGuard(kv, ttl_seconds=300)
        outcome = await guard.begin("anon:10.0.0.1:6f1c...")
        if outcome.is_conflict:
            ...  # respond 409
        try:
            ...
        finally:
            await guard.finish("anon:10.0.0.1:6f1c...")
    """

    def __init__(self, kv: KVStore, ttl_seconds: int = 300, prefix: str = "idempotency") -> None:
        """Initialize the guard.

        Args:
            kv: Store whose ``add`` is atomic for every process sharing it
            ttl_seconds: Safety bound after which an orphaned record expires
            prefix: Namespace for record keys
        """
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _record(self, status: IdempotencyStatus) -> bytes:
        return json.dumps({"status": status.value, "updated_at": time.time()}).encode()

    async def begin(self, key: str) -> IdempotencyOutcome:
        """Claim a key. Exactly one concurrent caller per key is acquired.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        record_key = self._key(key)
        if await self.kv.add(record_key, self._record(IdempotencyStatus.PENDING), ttl=self.ttl_seconds):
            return IdempotencyOutcome(acquired=True)

        emit_counter("idempotency.conflict")
        return IdempotencyOutcome(acquired=False, existing_status=await self._status(record_key))

    async def _status(self, record_key: str) -> IdempotencyStatus:
        raw = await self.kv.get(record_key)
        if raw is None:
            # Released between our add and get; still report the conflict
            return IdempotencyStatus.TERMINAL
        try:
            return IdempotencyStatus(json.loads(raw.decode())["status"])
        except (ValueError, KeyError, TypeError):
            return IdempotencyStatus.PENDING

    async def mark_terminal(self, key: str) -> None:
        """Record that the result for a key has been emitted. Best effort."""
        try:
            await self.kv.set(self._key(key), self._record(IdempotencyStatus.TERMINAL), ttl=self.ttl_seconds)
        except StoreUnavailableError as e:
            logger.warning("Could not mark submission terminal", context={"key": key}, error=e)

    async def finish(self, key: str) -> None:
        """Release a key. Idempotent; failures are logged and swallowed.

        The response has already been streamed by the time this runs, so
        there is nothing useful to report to the client; the record's TTL
        bounds how long a failed release blocks the key.
        """
        try:
            await self.kv.delete(self._key(key))
        except StoreUnavailableError as e:
            logger.warning("Could not release idempotency key", context={"key": key}, error=e)
            emit_counter("idempotency.release_failed")
