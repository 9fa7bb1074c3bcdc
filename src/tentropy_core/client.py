"""HTTP client for the submission API."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from tentropy_core.submission.streaming import StreamDecoder


@dataclass
class RateLimitStatus:
    """Quota as reported by the X-RateLimit-* headers or the status endpoint."""

    limit: int
    remaining: int
    reset: int  # epoch milliseconds

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "RateLimitStatus | None":
        try:
            return cls(
                limit=int(headers["X-RateLimit-Limit"]),
                remaining=int(headers["X-RateLimit-Remaining"]),
                reset=int(headers["X-RateLimit-Reset"]),
            )
        except (KeyError, ValueError):
            return None


@dataclass
class ClientResult:
    """Outcome of one submission as seen by the client.

    ``status`` is one of: success, failure, error, cancelled, rate_limited,
    duplicate, invalid, not_found.
    """

    status: str
    output: str = ""
    sandbox_id: str | None = None
    rate_limit: RateLimitStatus | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "success"


_REJECTIONS = {
    400: "invalid",
    404: "not_found",
    409: "duplicate",
    429: "rate_limited",
}


class SubmissionClient:
    """Submits code and follows the result stream.

    The client remembers the sandbox id of the last run and sends it with
    the next submission so a warm sandbox can be reused.

    Example:
        async with SubmissionClient("http://localhost:8080") as client:
            result = await client.submit(code, "ai-cost-cache-002", on_output=print)
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service root URL
            token: Optional bearer token identifying the user
            transport: Custom httpx transport (e.g. ASGITransport in tests)
            timeout: Read timeout for a whole submission stream
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            transport=transport,
            timeout=timeout,
        )
        self.sandbox_id: str | None = None

    async def submit(
        self,
        code: str,
        challenge_id: str,
        idempotency_key: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> ClientResult:
        """Submit code and wait for the terminal result.

        Args:
            code: Source of the solution module
            challenge_id: Challenge to run against
            idempotency_key: Key for this attempt (a fresh UUID by default);
                reuse it only when retrying the same attempt
            on_output: Receives ANSI-stripped output as it streams in
        """
        payload: dict[str, Any] = {
            "code": code,
            "challengeId": challenge_id,
            "idempotencyKey": idempotency_key or str(uuid.uuid4()),
        }
        if self.sandbox_id:
            payload["sandboxID"] = self.sandbox_id

        async with self._http.stream("POST", "/api/submit", json=payload) as response:
            rate_limit = RateLimitStatus.from_headers(response.headers)

            if response.status_code != 200:
                await response.aread()
                try:
                    details = response.json()
                except ValueError:
                    details = {}
                status = _REJECTIONS.get(response.status_code, "error")
                return ClientResult(
                    status=status,
                    rate_limit=rate_limit,
                    error=details.get("error") or f"HTTP {response.status_code}",
                    details=details,
                )

            decoder = StreamDecoder()
            async for chunk in response.aiter_text():
                text = decoder.feed(chunk)
                if text and on_output is not None:
                    on_output(text)
            decoded = decoder.finish()

        if decoded.sandbox_id:
            self.sandbox_id = decoded.sandbox_id

        if decoded.result is None:
            # No terminal record: the run cannot be trusted to have passed
            return ClientResult(
                status="failure",
                output=decoded.output,
                rate_limit=rate_limit,
                error=decoded.error,
            )
        return ClientResult(
            status=decoded.outcome,
            output=decoded.output,
            sandbox_id=decoded.sandbox_id,
            rate_limit=rate_limit,
            details=decoded.result,
        )

    async def rate_limit_status(self) -> RateLimitStatus:
        """Peek at the caller's quota without consuming it."""
        response = await self._http.get("/api/rate-limit-status")
        response.raise_for_status()
        data = response.json()
        return RateLimitStatus(limit=data["limit"], remaining=data["remaining"], reset=data["reset"])

    async def run_code(self, code: str) -> dict[str, Any]:
        """Run code in the playground and return ``{stdout, stderr, sandboxID}``."""
        payload: dict[str, Any] = {"code": code}
        if self.sandbox_id:
            payload["sandboxID"] = self.sandbox_id
        response = await self._http.post("/api/run-code", json=payload)
        response.raise_for_status()
        data = response.json()
        if data.get("sandboxID"):
            self.sandbox_id = data["sandboxID"]
        return data

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "SubmissionClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
