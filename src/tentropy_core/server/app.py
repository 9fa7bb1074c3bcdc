"""ASGI application for standalone deployment."""

import contextlib
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from tentropy_core.server.middleware import IdentityMiddleware
from tentropy_core.server.routes import create_routes

if TYPE_CHECKING:
    from tentropy_core.engine import Engine


def create_app(engine: "Engine") -> Starlette:
    """Create the ASGI application.

    Args:
        engine: The configured Engine instance

    Returns:
        Starlette application
    """
    config = engine.config

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        await engine.aclose()

    # Middleware stack: CORS -> Identity -> Route handler
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins or ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
        ),
        Middleware(
            IdentityMiddleware,
            jwt_secret=config.auth.jwt_secret,
            jwt_audience=config.auth.jwt_audience,
            jwt_algorithms=config.auth.jwt_algorithms,
            trust_forwarded_for=config.server.trust_forwarded_for,
        ),
    ]

    return Starlette(
        routes=create_routes(engine),
        middleware=middleware,
        lifespan=lifespan,
    )
