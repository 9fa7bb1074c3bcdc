"""Sliding-window rate limiting.

Two interchangeable implementations share the RateLimiter protocol:

- SlidingWindowRateLimiter keeps the request log in process memory. It is
  exact for a single instance but NOT linearizable across instances: two
  servers each admit up to ``limit`` requests per window.
- RedisSlidingWindowRateLimiter keeps the log in a Redis sorted set and is
  shared by every instance.

FallbackRateLimiter wraps the shared limiter with the in-process one so an
unreachable store degrades to per-process limiting instead of failing
requests. Every degradation is logged and counted.
"""

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

import redis.asyncio as redis

from tentropy_core.backends.kv.redis_kv import UNAVAILABLE_ERRORS
from tentropy_core.config import KVStorageConfig, RateLimitConfig
from tentropy_core.exceptions import StoreUnavailableError
from tentropy_core.observability import emit_counter, get_logger

logger = get_logger(__name__)


class RateLimitResult(Enum):
    """Result of a rate limit check."""

    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass
class RateLimitInfo:
    """Information about rate limit status."""

    result: RateLimitResult
    limit: int
    remaining: int
    reset_at: float  # Unix timestamp
    retry_after: float | None = None  # Seconds until allowed

    @property
    def is_allowed(self) -> bool:
        """Check if request is allowed."""
        return self.result == RateLimitResult.ALLOWED

    @property
    def reset_ms(self) -> int:
        """Reset time as epoch milliseconds (what clients render countdowns from)."""
        return int(self.reset_at * 1000)

    def to_dict(self) -> dict[str, int]:
        return {"limit": self.limit, "remaining": self.remaining, "reset": self.reset_ms}


class RateLimiter(Protocol):
    """Protocol for rate limiter implementations."""

    async def check(self, key: str) -> RateLimitInfo:
        """Consume one request from the key's quota if available.

        Args:
            key: Caller bucket (e.g. "user:123", "anon:10.0.0.1")

        Returns:
            Rate limit info including whether allowed
        """
        ...

    async def peek(self, key: str) -> RateLimitInfo:
        """Report the key's quota without consuming it."""
        ...

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        ...


def _denied(limit: int, reset_at: float, now: float) -> RateLimitInfo:
    return RateLimitInfo(
        result=RateLimitResult.DENIED,
        limit=limit,
        remaining=0,
        reset_at=reset_at,
        retry_after=max(0.0, reset_at - now),
    )


class SlidingWindowRateLimiter:
    """In-process sliding window rate limiter.

    A request counts against the window until ``window_seconds`` after it
    was admitted; when the oldest admitted request leaves the window,
    exactly one slot frees up. Denied requests are not recorded.

    Example:
        limiter = SlidingWindowRateLimiter(limit=5, window_seconds=600)
        info = await limiter.check("anon:10.0.0.1")
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        """Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds
            clock: Returns the current time in seconds
            **kwargs: Ignored (for compatibility with other algorithms)
        """
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = {}
        self._next_sweep = clock() + window_seconds

    @property
    def tracked_keys(self) -> int:
        return len(self._requests)

    def _sweep(self, now: float) -> None:
        """Forget callers that have not been seen for a whole window.

        Runs at most once per window.
        """
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.window_seconds
        window_start = now - self.window_seconds
        for key in [k for k, times in self._requests.items() if times[-1] <= window_start]:
            del self._requests[key]

    def _prune(self, key: str, now: float) -> list[float]:
        """Drop timestamps that have left the window."""
        self._sweep(now)
        window_start = now - self.window_seconds
        recent = [t for t in self._requests.get(key, []) if t > window_start]
        if recent:
            self._requests[key] = recent
        else:
            self._requests.pop(key, None)
        return recent

    def _reset_at(self, recent: list[float], now: float) -> float:
        # When the oldest request exits the window
        if recent:
            return recent[0] + self.window_seconds
        return now + self.window_seconds

    async def check(self, key: str) -> RateLimitInfo:
        """Check if request is allowed under rate limit."""
        now = self._clock()
        recent = self._prune(key, now)

        if len(recent) >= self.limit:
            return _denied(self.limit, self._reset_at(recent, now), now)

        recent.append(now)
        self._requests[key] = recent

        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            limit=self.limit,
            remaining=self.limit - len(recent),
            reset_at=self._reset_at(recent, now),
        )

    async def peek(self, key: str) -> RateLimitInfo:
        """Report remaining quota without recording a request."""
        now = self._clock()
        recent = self._prune(key, now)
        reset_at = self._reset_at(recent, now)
        if len(recent) >= self.limit:
            return _denied(self.limit, reset_at, now)
        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            limit=self.limit,
            remaining=self.limit - len(recent),
            reset_at=reset_at,
        )

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        self._requests.pop(key, None)


class RedisSlidingWindowRateLimiter:
    """Sliding window rate limiter shared through Redis.

    Each key is a sorted set of admitted request ids scored by time. A check
    prunes, inserts and counts inside one MULTI/EXEC transaction; if the
    count overshoots the limit the inserted member is removed again. Racing
    callers therefore can only under-admit, never over-admit.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
        prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        """Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds
            redis_url: Connection URL, used when no client is given
            client: Shared async Redis client
            prefix: Namespace for the sorted-set keys
            clock: Returns the current time in seconds
            **kwargs: Ignored
        """
        if client is None:
            if not redis_url:
                raise ValueError("RedisSlidingWindowRateLimiter requires redis_url or client")
            client = redis.from_url(redis_url)
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _reset_at(self, oldest: list[tuple[Any, float]], now: float) -> float:
        if oldest:
            return float(oldest[0][1]) + self.window_seconds
        return now + self.window_seconds

    async def check(self, key: str) -> RateLimitInfo:
        """Check if request is allowed under rate limit."""
        now = self._clock()
        redis_key = self._key(key)
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, "-inf", now - self.window_seconds)
                pipe.zadd(redis_key, {member: now})
                pipe.zcard(redis_key)
                pipe.zrange(redis_key, 0, 0, withscores=True)
                pipe.pexpire(redis_key, int(self.window_seconds * 1000))
                _, _, count, oldest, _ = await pipe.execute()

            if count > self.limit:
                await self.client.zrem(redis_key, member)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Rate limit store unavailable: {e}") from e

        reset_at = self._reset_at(oldest, now)
        if count > self.limit:
            return _denied(self.limit, reset_at, now)

        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            limit=self.limit,
            remaining=self.limit - count,
            reset_at=reset_at,
        )

    async def peek(self, key: str) -> RateLimitInfo:
        """Report remaining quota without recording a request."""
        now = self._clock()
        redis_key = self._key(key)

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, "-inf", now - self.window_seconds)
                pipe.zcard(redis_key)
                pipe.zrange(redis_key, 0, 0, withscores=True)
                _, count, oldest = await pipe.execute()
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Rate limit store unavailable: {e}") from e

        reset_at = self._reset_at(oldest, now)
        if count >= self.limit:
            return _denied(self.limit, reset_at, now)
        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            limit=self.limit,
            remaining=self.limit - count,
            reset_at=reset_at,
        )

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        try:
            await self.client.delete(self._key(key))
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Rate limit store unavailable: {e}") from e


class FallbackRateLimiter:
    """Uses ``fallback`` whenever ``primary`` reports its store unavailable.

    The fallback is normally an in-process SlidingWindowRateLimiter, so
    while degraded the quota is enforced per instance only.
    """

    def __init__(self, primary: RateLimiter, fallback: RateLimiter) -> None:
        self.primary = primary
        self.fallback = fallback

    def _degraded(self, operation: str, key: str, error: StoreUnavailableError) -> None:
        logger.warning(
            "Shared rate limit store unavailable, using per-process window",
            context={"operation": operation, "key": key},
            error=error,
        )
        emit_counter("rate_limit.fallback", {"operation": operation})

    async def check(self, key: str) -> RateLimitInfo:
        try:
            return await self.primary.check(key)
        except StoreUnavailableError as e:
            self._degraded("check", key, e)
            return await self.fallback.check(key)

    async def peek(self, key: str) -> RateLimitInfo:
        try:
            return await self.primary.peek(key)
        except StoreUnavailableError as e:
            self._degraded("peek", key, e)
            return await self.fallback.peek(key)

    async def reset(self, key: str) -> None:
        await self.fallback.reset(key)
        try:
            await self.primary.reset(key)
        except StoreUnavailableError as e:
            self._degraded("reset", key, e)


class RateLimiterFactory:
    """Factory for creating rate limiters from configuration.

    Example:
        limiter = RateLimiterFactory.create({
            "algorithm": "sliding_window",
            "limit": 5,
            "window_seconds": 600,
        })
    """

    _algorithms: dict[str, type] = {
        "sliding_window": SlidingWindowRateLimiter,
        "redis_sliding_window": RedisSlidingWindowRateLimiter,
    }

    @classmethod
    def create(cls, config: dict) -> RateLimiter:
        """Create rate limiter from config.

        Args:
            config: Rate limiter configuration with "algorithm" key

        Returns:
            Configured rate limiter instance
        """
        algorithm = config.get("algorithm", "sliding_window")
        limiter_class = cls._algorithms.get(algorithm)

        if limiter_class is None:
            raise ValueError(f"Unknown rate limit algorithm: {algorithm}")

        kwargs = {k: v for k, v in config.items() if k != "algorithm"}
        return limiter_class(**kwargs)

    @classmethod
    def from_config(
        cls,
        rate_limit: RateLimitConfig,
        kv: KVStorageConfig,
        client: redis.Redis | None = None,
    ) -> RateLimiter:
        """Build the submission limiter for the configured store.

        Args:
            rate_limit: Quota settings
            kv: Shared store settings; "redis" selects the shared limiter
            client: Existing Redis client to reuse

        Returns:
            A shared limiter (optionally with in-process fallback) or an
            in-process limiter
        """
        local = cls.create({
            "algorithm": "sliding_window",
            "limit": rate_limit.limit,
            "window_seconds": rate_limit.window_seconds,
        })
        if kv.backend != "redis":
            logger.info(
                "Rate limiting with per-process window",
                context={"limit": rate_limit.limit, "window_seconds": rate_limit.window_seconds},
            )
            return local

        shared = cls.create({
            "algorithm": "redis_sliding_window",
            "limit": rate_limit.limit,
            "window_seconds": rate_limit.window_seconds,
            "redis_url": kv.redis_url,
            "client": client,
            "prefix": rate_limit.prefix,
        })
        if rate_limit.fallback_to_memory:
            return FallbackRateLimiter(shared, local)
        return shared

    @classmethod
    def register(cls, name: str, limiter_class: type) -> None:
        """Register a custom rate limiter algorithm.

        Args:
            name: Algorithm name
            limiter_class: Rate limiter class
        """
        cls._algorithms[name] = limiter_class
