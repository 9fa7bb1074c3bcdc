"""HTTP Server module."""

from tentropy_core.server.app import create_app
from tentropy_core.server.middleware import IdentityMiddleware, client_address
from tentropy_core.server.routes import SubmissionStreamResponse, create_routes, rate_limit_headers

__all__ = [
    "IdentityMiddleware",
    "SubmissionStreamResponse",
    "client_address",
    "create_app",
    "create_routes",
    "rate_limit_headers",
]
