"""Tentropy Core - submission pipeline for sandboxed coding challenges."""

from tentropy_core.challenges import Challenge, ChallengeRepository, InMemoryChallengeRepository
from tentropy_core.client import ClientResult, SubmissionClient
from tentropy_core.config import Config
from tentropy_core.engine import Engine
from tentropy_core.idempotency import IdempotencyGuard, IdempotencyOutcome, IdempotencyStatus
from tentropy_core.observability import (
    RequestContext,
    StructuredLogger,
    Timer,
    configure_logging,
    emit_counter,
    emit_metric,
    emit_timer,
    get_logger,
    register_metric_callback,
)
from tentropy_core.rate_limiting import (
    FallbackRateLimiter,
    RateLimiter,
    RateLimiterFactory,
    RateLimitInfo,
    RateLimitResult,
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
)
from tentropy_core.submission import (
    CallerIdentity,
    SubmissionOrchestrator,
    SubmissionRequest,
    SubmissionResult,
    SubmissionRun,
    SubmissionState,
    decode_stream,
    strip_ansi,
)

__version__ = "0.1.0"
__all__ = [
    # Core
    "Config",
    "Engine",
    # Challenges
    "Challenge",
    "ChallengeRepository",
    "InMemoryChallengeRepository",
    # Submissions
    "CallerIdentity",
    "SubmissionOrchestrator",
    "SubmissionRequest",
    "SubmissionResult",
    "SubmissionRun",
    "SubmissionState",
    "decode_stream",
    "strip_ansi",
    # Idempotency
    "IdempotencyGuard",
    "IdempotencyOutcome",
    "IdempotencyStatus",
    # Client
    "ClientResult",
    "SubmissionClient",
    # Observability
    "RequestContext",
    "StructuredLogger",
    "Timer",
    "configure_logging",
    "emit_counter",
    "emit_metric",
    "emit_timer",
    "get_logger",
    "register_metric_callback",
    # Rate Limiting
    "FallbackRateLimiter",
    "RateLimiter",
    "RateLimiterFactory",
    "RateLimitInfo",
    "RateLimitResult",
    "RedisSlidingWindowRateLimiter",
    "SlidingWindowRateLimiter",
]
