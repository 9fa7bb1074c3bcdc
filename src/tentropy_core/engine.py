"""Engine: wires configuration, backends and services together."""

from pathlib import Path
from typing import Any

from tentropy_core.backends.kv.redis_kv import RedisKVStore
from tentropy_core.challenges import ChallengeRepository, InMemoryChallengeRepository
from tentropy_core.config import Config
from tentropy_core.idempotency import IdempotencyGuard
from tentropy_core.observability import Timer, configure_logging, emit_timer, get_logger
from tentropy_core.playground import CodePlayground
from tentropy_core.plugins import create_kv_store, create_sandbox_provider
from tentropy_core.protocols import KVStore, SandboxProvider
from tentropy_core.rate_limiting import RateLimiter, RateLimiterFactory
from tentropy_core.sandbox import SandboxBroker
from tentropy_core.submission import SubmissionOrchestrator

logger = get_logger(__name__)


class Engine:
    """The submission service.

    Example usage:
        # Load from config file and serve
        engine = Engine.from_config("tentropy.yaml")
        engine.serve(port=8080)

        # Or embed, supplying backends directly
        engine = Engine(Config(), kv=MemoryKVStore(), sandbox_provider=LocalSandboxProvider())
        run = await engine.orchestrator.start(request)
    """

    def __init__(
        self,
        config: Config,
        kv: KVStore | None = None,
        sandbox_provider: SandboxProvider | None = None,
        challenges: ChallengeRepository | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Build every service. Nothing connects to the network here.

        Args:
            config: Service configuration
            kv: Shared store (default: from ``config.storage.kv``)
            sandbox_provider: Sandbox backend (default: from ``config.sandbox``)
            challenges: Challenge catalogue (default: from ``config.challenges``)
            rate_limiter: Submission limiter (default: from ``config.rate_limit``)
        """
        self.config = config

        with Timer() as timer:
            kv_config = config.storage.kv
            self.kv = kv or create_kv_store(kv_config.backend, redis_url=kv_config.redis_url)

            sandbox_config = config.sandbox
            self.sandbox_provider = sandbox_provider or create_sandbox_provider(
                sandbox_config.backend,
                api_key=sandbox_config.api_key,
                template_id=sandbox_config.template_id,
            )

            if challenges is None:
                challenges = InMemoryChallengeRepository.from_path(config.challenges.path)
            self.challenges = challenges

            # Share one connection pool between the store and the limiter
            client = self.kv.client if isinstance(self.kv, RedisKVStore) else None
            self.rate_limiter = rate_limiter or RateLimiterFactory.from_config(
                config.rate_limit, kv_config, client=client
            )

            self.guard = IdempotencyGuard(
                self.kv,
                ttl_seconds=config.idempotency.ttl_seconds,
                prefix=config.idempotency.prefix,
            )
            self.broker = SandboxBroker(
                self.sandbox_provider,
                self.kv,
                idle_timeout_seconds=sandbox_config.idle_timeout_seconds,
                lease_ttl_seconds=sandbox_config.lease_ttl_seconds,
            )
            self.orchestrator = SubmissionOrchestrator(
                self.challenges,
                self.broker,
                self.guard,
                config=sandbox_config,
            )
            self.playground = CodePlayground(self.broker, config.playground)

        logger.info(
            "Engine initialized",
            context={"kv_backend": kv_config.backend, "sandbox_backend": sandbox_config.backend},
            duration_ms=timer.duration_ms,
        )
        emit_timer("engine.init", timer.duration_ms)

    @classmethod
    def from_config(cls, path: str | Path, **kwargs: Any) -> "Engine":
        """Create an Engine from a YAML or JSON configuration file."""
        return cls(Config.from_file(path), **kwargs)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any], **kwargs: Any) -> "Engine":
        """Create an Engine from a configuration dictionary."""
        return cls(Config.from_dict(config_dict), **kwargs)

    def serve(
        self,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        """Start the HTTP server.

        Args:
            host: Host to bind to (defaults to config value)
            port: Port to bind to (defaults to config value)
        """
        import uvicorn

        from tentropy_core.server.app import create_app

        configure_logging(self.config.logging.level, self.config.logging.format)
        app = create_app(self)
        uvicorn.run(
            app,
            host=host or self.config.server.host,
            port=port or self.config.server.port,
        )

    async def aclose(self) -> None:
        """Cancel in-flight submissions, then close backends."""
        await self.orchestrator.aclose()
        close_provider = getattr(self.sandbox_provider, "close", None)
        if close_provider is not None:
            await close_provider()
        await self.kv.close()
        logger.info("Engine closed")

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
