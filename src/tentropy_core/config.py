"""Configuration loading with environment variable substitution."""

import json
import math
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

# Slack on top of the sandbox-side command timeout before a run stops waiting
TIMEOUT_GRACE_SECONDS = 5.0

# Headroom a sandbox lease keeps beyond the longest possible run
LEASE_MARGIN_SECONDS = 30


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} patterns with environment variables."""
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable {var_name} is not set")
            return env_value

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(v) for v in value]
    return value


class KVStorageConfig(BaseModel):
    """Shared key-value store configuration."""

    backend: str = "memory"  # memory | redis
    redis_url: str | None = None


class StorageConfig(BaseModel):
    """Storage backends configuration."""

    kv: KVStorageConfig = Field(default_factory=KVStorageConfig)


class RateLimitConfig(BaseModel):
    """Sliding-window submission quota per caller."""

    limit: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=600, ge=1)
    prefix: str = "ratelimit"
    # Degrade to a per-process window when the shared store is down
    fallback_to_memory: bool = True


class IdempotencyConfig(BaseModel):
    """Duplicate-submission guard settings."""

    ttl_seconds: int = Field(default=300, ge=1)
    prefix: str = "idempotency"
    max_key_length: int = 128


class SandboxConfig(BaseModel):
    """Remote sandbox settings."""

    backend: str = "e2b"  # e2b | local
    api_key: str | None = None
    template_id: str | None = None
    idle_timeout_seconds: int = 30
    command_timeout_seconds: float = 15
    install_timeout_seconds: float = 120
    test_command: str = "pytest -s test_main.py"
    solution_path: str = "solution.py"
    test_path: str = "test_main.py"
    lease_ttl_seconds: int | None = None  # Derived from the timeouts when unset
    max_code_bytes: int = 64 * 1024

    @property
    def max_run_seconds(self) -> float:
        """Longest a submission can hold its sandbox."""
        return self.install_timeout_seconds + self.command_timeout_seconds + TIMEOUT_GRACE_SECONDS

    @model_validator(mode="after")
    def _lease_outlives_run(self) -> "SandboxConfig":
        floor = math.ceil(self.max_run_seconds) + LEASE_MARGIN_SECONDS
        if self.lease_ttl_seconds is None:
            self.lease_ttl_seconds = floor
        elif self.lease_ttl_seconds < floor:
            raise ValueError(
                f"lease_ttl_seconds ({self.lease_ttl_seconds}) is shorter than the longest run ({floor}s)"
            )
        return self


class PlaygroundConfig(BaseModel):
    """Free-form code runner settings."""

    enabled: bool = True
    timeout_seconds: float = 5
    path: str = "playground.py"


class ChallengesConfig(BaseModel):
    """Challenge catalogue location."""

    path: str | None = None  # Bundled challenges when unset


class AuthConfig(BaseModel):
    """Bearer token verification used to identify callers."""

    jwt_secret: str | None = None
    jwt_audience: str | None = None
    jwt_algorithms: list[str] = Field(default_factory=lambda: ["HS256"])


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: str = "INFO"
    format: str = "json"  # json | text


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = Field(default_factory=list)
    trust_forwarded_for: bool = True


class Config(BaseModel):
    """Main configuration for tentropy-core."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    playground: PlaygroundConfig = Field(default_factory=PlaygroundConfig)
    challenges: ChallengesConfig = Field(default_factory=ChallengesConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        data = substitute_env_vars(data)
        return cls.model_validate(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Load configuration from a dictionary."""
        data = substitute_env_vars(data)
        return cls.model_validate(data)
