"""HTTP route handlers.

Submissions stream over chunked HTTP. The default body is plain text
ending in a ``__JSON_RESULT__:`` record; clients that ask for
``application/x-ndjson`` (``Accept`` header or ``?format=ndjson``) get one
JSON object per line instead.
"""

import math
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from tentropy_core.exceptions import (
    ChallengeNotFoundError,
    DuplicateSubmissionError,
    InvalidSubmissionError,
    StoreUnavailableError,
)
from tentropy_core.observability import RequestContext, emit_counter, get_logger
from tentropy_core.rate_limiting import RateLimitInfo
from tentropy_core.server.middleware import client_address
from tentropy_core.submission import CallerIdentity, SubmissionRequest, SubmissionRun, encode_events
from tentropy_core.submission.streaming import StreamEncoder, select_encoder

if TYPE_CHECKING:
    from tentropy_core.engine import Engine

logger = get_logger(__name__)


class SubmissionStreamResponse(StreamingResponse):
    """Chunked submission stream with proxy buffering disabled."""

    def __init__(
        self,
        content: AsyncIterator[str],
        media_type: str,
        status_code: int = 200,
        headers: dict | None = None,
    ) -> None:
        stream_headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
        if headers:
            stream_headers.update(headers)

        super().__init__(
            content=content,
            status_code=status_code,
            headers=stream_headers,
            media_type=media_type,
        )


def rate_limit_headers(info: RateLimitInfo) -> dict[str, str]:
    """X-RateLimit-* headers; the reset is epoch milliseconds."""
    headers = {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
        "X-RateLimit-Reset": str(info.reset_ms),
    }
    if info.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(info.retry_after)))
    return headers


def get_identity(request: Request) -> CallerIdentity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        identity = CallerIdentity(address=client_address(request))
    return identity


async def stream_run(run: SubmissionRun, encoder: StreamEncoder) -> AsyncIterator[str]:
    """Encode a run for the response body; a dropped client cancels the run.

    The body ends only after the run has released its sandbox and key, so
    a client may resubmit with the same key as soon as it has the result.
    """
    try:
        async for data in encode_events(run.events(), encoder):
            yield data
        await run.wait()
    finally:
        run.cancel()


def create_routes(engine: "Engine") -> list[Route]:
    """Create HTTP routes for the engine.

    Args:
        engine: The configured Engine instance

    Returns:
        List of Starlette routes
    """
    config = engine.config

    async def health(request: Request) -> Response:
        """Health check endpoint."""
        return JSONResponse(
            {
                "status": "ok",
                "timestamp": time.time(),
                "active_submissions": engine.orchestrator.active_runs,
            }
        )

    async def submit(request: Request) -> Response:
        """Run a submission against its challenge's tests.

        Body: ``{"code", "challengeId", "sandboxID"?, "idempotencyKey"?}``

        Checks run in order and stop at the first failure: rate limit
        (429), body validation (400), challenge lookup (404), idempotency
        (409). Only then is a sandbox touched.
        """
        identity = get_identity(request)
        try:
            info = await engine.rate_limiter.check(identity.rate_limit_key)
            headers = rate_limit_headers(info)
            if not info.is_allowed:
                emit_counter("submission.rate_limited")
                return JSONResponse(
                    {"error": "Rate limit exceeded", **info.to_dict()},
                    status_code=429,
                    headers=headers,
                )

            try:
                body = await request.json()
            except ValueError:
                return JSONResponse({"error": "Invalid JSON body"}, status_code=400, headers=headers)

            try:
                submission = SubmissionRequest.from_payload(
                    body,
                    identity,
                    max_code_bytes=config.sandbox.max_code_bytes,
                    max_key_length=config.idempotency.max_key_length,
                )
            except InvalidSubmissionError as e:
                return JSONResponse({"error": str(e)}, status_code=400, headers=headers)

            with RequestContext(
                caller=identity.rate_limit_key,
                challenge_id=submission.challenge_id,
                submission_key=submission.idempotency_key,
            ):
                try:
                    run = await engine.orchestrator.start(submission)
                except ChallengeNotFoundError as e:
                    return JSONResponse(
                        {"error": "Challenge not found", "challengeId": e.challenge_id},
                        status_code=404,
                        headers=headers,
                    )
                except DuplicateSubmissionError as e:
                    return JSONResponse(
                        {"error": "Submission already in progress", "status": e.existing_status},
                        status_code=409,
                        headers=headers,
                    )

            encoder = select_encoder(
                request.query_params.get("format"),
                request.headers.get("accept"),
            )
            return SubmissionStreamResponse(
                stream_run(run, encoder),
                media_type=encoder.media_type,
                headers=headers,
            )
        except StoreUnavailableError as e:
            logger.error("Shared store unavailable during admission", error=e)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        except Exception as e:
            logger.error("Submission request failed", error=e)
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    async def rate_limit_status(request: Request) -> Response:
        """Report the caller's quota without consuming it."""
        identity = get_identity(request)
        try:
            info = await engine.rate_limiter.peek(identity.rate_limit_key)
        except Exception as e:
            logger.error("Rate limit status failed", error=e)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return JSONResponse(info.to_dict(), headers=rate_limit_headers(info))

    async def run_code(request: Request) -> Response:
        """Run code without tests. Body: ``{"code", "sandboxID"?}``."""
        if not config.playground.enabled:
            return JSONResponse({"error": "Not found"}, status_code=404)

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        code = body.get("code") if isinstance(body, dict) else None
        if not isinstance(code, str) or not code:
            return JSONResponse({"error": "No code provided"}, status_code=400)
        sandbox_id = body.get("sandboxID")
        if not isinstance(sandbox_id, str):
            sandbox_id = None

        try:
            result = await engine.playground.run(code, sandbox_id)
        except Exception as e:
            logger.error("Playground run failed", error=e)
            return JSONResponse({"error": "Execution failed", "details": str(e)}, status_code=500)
        return JSONResponse(result)

    return [
        Route("/health", health, methods=["GET"]),
        Route("/ping", health, methods=["GET"]),
        Route("/api/submit", submit, methods=["POST"]),
        Route("/api/rate-limit-status", rate_limit_status, methods=["GET"]),
        Route("/api/run-code", run_code, methods=["POST"]),
    ]
