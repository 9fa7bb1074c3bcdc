"""Sandbox acquisition with reuse and exclusive leases.

Clients send back the sandbox id from their previous submission so that a
warm sandbox can be reused. Two submissions must never run in the same
sandbox at once (they would overwrite each other's files), so each use is
guarded by a lease: a KV record claimed with set-if-absent and released
when the run ends. A sandbox whose lease is held elsewhere is never
shared; the caller gets a fresh one instead.
"""

import json
import time
from dataclasses import dataclass

from tentropy_core.exceptions import StoreUnavailableError
from tentropy_core.observability import Timer, emit_counter, emit_timer, get_logger
from tentropy_core.protocols import KVStore, SandboxProvider, SandboxSession

logger = get_logger(__name__)


@dataclass
class SandboxLease:
    """A sandbox held for exclusive use by one run."""

    session: SandboxSession
    reused: bool
    lease_key: str | None = None

    @property
    def sandbox_id(self) -> str:
        return self.session.sandbox_id


class SandboxBroker:
    """Hands out sandboxes, preferring to reconnect to the caller's last one."""

    def __init__(
        self,
        provider: SandboxProvider,
        kv: KVStore,
        idle_timeout_seconds: int = 30,
        lease_ttl_seconds: int = 170,
        prefix: str = "sandbox-lease",
    ) -> None:
        """Initialize the broker.

        Args:
            provider: Sandbox backend
            kv: Store holding sandbox leases
            idle_timeout_seconds: Idle lifetime requested on create/connect
            lease_ttl_seconds: Lease lifetime; must outlive the longest run
            prefix: Namespace for lease keys
        """
        self.provider = provider
        self.kv = kv
        self.idle_timeout_seconds = idle_timeout_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.prefix = prefix

    def _lease_key(self, sandbox_id: str) -> str:
        return f"{self.prefix}:{sandbox_id}"

    def _record(self) -> bytes:
        return json.dumps({"claimed_at": time.time()}).encode()

    async def _claim(self, sandbox_id: str) -> tuple[bool, str | None]:
        """Claim the lease for a sandbox. Returns (claimed, lease_key)."""
        key = self._lease_key(sandbox_id)
        record = self._record()
        try:
            claimed = await self.kv.add(key, record, ttl=self.lease_ttl_seconds)
        except StoreUnavailableError as e:
            # Without a store, exclusivity cannot be checked; proceed unleased
            logger.warning("Sandbox lease store unavailable", context={"sandbox_id": sandbox_id}, error=e)
            return True, None
        return claimed, key if claimed else None

    async def try_reconnect(self, sandbox_id: str) -> SandboxSession | None:
        """Reconnect to an existing sandbox.

        Any failure (expired, unknown id, provider outage) yields None; the
        caller falls back to creating a fresh sandbox.
        """
        try:
            return await self.provider.connect(sandbox_id, self.idle_timeout_seconds)
        except Exception as e:
            logger.debug("Sandbox reconnect failed", context={"sandbox_id": sandbox_id}, error=e)
            emit_counter("sandbox.reconnect_failed")
            return None

    async def acquire(self, sandbox_id: str | None = None) -> SandboxLease:
        """Get a sandbox for exclusive use.

        Args:
            sandbox_id: Sandbox the caller used last, if any

        Raises:
            SandboxError: If a fresh sandbox cannot be created
        """
        async with Timer() as timer:
            lease = await self._acquire(sandbox_id)
        emit_timer("sandbox.acquire", timer.duration_ms, {"reused": lease.reused})
        logger.info(
            "Sandbox acquired",
            context={"sandbox_id": lease.sandbox_id, "reused": lease.reused},
            duration_ms=timer.duration_ms,
        )
        return lease

    async def _acquire(self, sandbox_id: str | None) -> SandboxLease:
        if sandbox_id:
            claimed, lease_key = await self._claim(sandbox_id)
            if not claimed:
                emit_counter("sandbox.lease_busy")
                logger.info("Sandbox busy, creating a fresh one", context={"sandbox_id": sandbox_id})
            else:
                session = await self.try_reconnect(sandbox_id)
                if session is not None:
                    return SandboxLease(session=session, reused=True, lease_key=lease_key)
                if lease_key:
                    await self._release_key(lease_key)

        session = await self.provider.create(self.idle_timeout_seconds)
        emit_counter("sandbox.created")
        _, lease_key = await self._claim(session.sandbox_id)
        return SandboxLease(session=session, reused=False, lease_key=lease_key)

    async def _release_key(self, lease_key: str) -> None:
        try:
            await self.kv.delete(lease_key)
        except StoreUnavailableError as e:
            logger.warning("Could not release sandbox lease", context={"lease_key": lease_key}, error=e)

    async def release(self, lease: SandboxLease) -> None:
        """Give a sandbox back. Best effort; the lease TTL covers failures."""
        if lease.lease_key:
            await self._release_key(lease.lease_key)
            lease.lease_key = None

    async def renew(self, lease: SandboxLease) -> None:
        """Restart the lease TTL for a sandbox still in use."""
        if not lease.lease_key:
            return
        try:
            await self.kv.set(lease.lease_key, self._record(), ttl=self.lease_ttl_seconds)
        except StoreUnavailableError as e:
            logger.warning("Could not renew sandbox lease", context={"lease_key": lease.lease_key}, error=e)
