"""Caller identification middleware for the HTTP server."""

from typing import Any, Callable

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tentropy_core.observability import get_logger
from tentropy_core.submission import CallerIdentity

logger = get_logger(__name__)

DEFAULT_ADDRESS = "127.0.0.1"


def client_address(request: Request, trust_forwarded_for: bool = True) -> str:
    """Network address of the caller.

    The first entry of X-Forwarded-For is the original client when the
    service sits behind a proxy; otherwise the socket peer is used.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return DEFAULT_ADDRESS


class IdentityMiddleware(BaseHTTPMiddleware):
    """Attaches a CallerIdentity to ``request.state.identity``.

    A bearer token, when present and a secret is configured, is verified
    with PyJWT and its ``sub`` claim becomes the user id. Requests without
    a token are anonymous and identified by address. A token that fails
    verification is rejected with 401 rather than silently downgraded.
    """

    def __init__(
        self,
        app: Any,
        jwt_secret: str | None = None,
        jwt_audience: str | None = None,
        jwt_algorithms: list[str] | None = None,
        trust_forwarded_for: bool = True,
        public_paths: list[str] | None = None,
    ) -> None:
        """Initialize identity middleware.

        Args:
            app: The ASGI application
            jwt_secret: Key used to verify bearer tokens; tokens are ignored when unset
            jwt_audience: Expected ``aud`` claim, if any
            jwt_algorithms: Accepted signing algorithms
            trust_forwarded_for: Whether to honour X-Forwarded-For
            public_paths: Paths that skip token verification
        """
        super().__init__(app)
        self.jwt_secret = jwt_secret
        self.jwt_audience = jwt_audience
        self.jwt_algorithms = jwt_algorithms or ["HS256"]
        self.trust_forwarded_for = trust_forwarded_for
        self.public_paths = set(public_paths or ["/health", "/ping"])

    def _verify(self, token: str) -> dict[str, Any]:
        options = {"verify_aud": self.jwt_audience is not None}
        return jwt.decode(
            token,
            self.jwt_secret,
            algorithms=self.jwt_algorithms,
            audience=self.jwt_audience,
            options=options,
        )

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        """Resolve the caller, or return 401 for a bad token."""
        address = client_address(request, self.trust_forwarded_for)
        user_id = None

        auth_header = request.headers.get("Authorization", "")
        if (
            self.jwt_secret
            and auth_header.startswith("Bearer ")
            and request.url.path not in self.public_paths
        ):
            token = auth_header[7:]  # Remove "Bearer " prefix
            try:
                claims = self._verify(token)
            except jwt.InvalidTokenError as e:
                logger.info("Rejected bearer token", context={"address": address, "reason": str(e)})
                return JSONResponse({"error": "Invalid or expired token"}, status_code=401)
            sub = claims.get("sub")
            user_id = str(sub) if sub is not None else None

        request.state.identity = CallerIdentity(user_id=user_id, address=address)
        return await call_next(request)
