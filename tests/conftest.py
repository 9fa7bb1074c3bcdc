"""Pytest configuration and fixtures."""

import asyncio
from dataclasses import dataclass, field

import pytest

from tentropy_core.backends.kv.memory import MemoryKVStore
from tentropy_core.challenges import Challenge, InMemoryChallengeRepository
from tentropy_core.config import Config
from tentropy_core.engine import Engine
from tentropy_core.exceptions import SandboxError, SandboxNotFoundError
from tentropy_core.observability import register_metric_callback, unregister_metric_callback
from tentropy_core.protocols.sandbox import CommandResult


@dataclass
class FakeBehavior:
    """How fake sandboxes respond to commands."""

    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    exit_code: int = 0
    error: Exception | None = None
    hang: bool = False
    fail_write: bool = False
    started: asyncio.Event | None = None


class FakeSandboxSession:
    """Sandbox session that records writes and replays scripted output."""

    def __init__(self, sandbox_id: str, behavior: FakeBehavior) -> None:
        self._sandbox_id = sandbox_id
        self.behavior = behavior
        self.files: dict[str, str] = {}
        self.commands: list[str] = []

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    async def write_file(self, path: str, content: str) -> None:
        if self.behavior.fail_write:
            raise SandboxError(f"write failed: {path}")
        self.files[path] = content

    async def run_command(self, command, timeout_seconds, on_stdout=None, on_stderr=None):
        self.commands.append(command)
        behavior = self.behavior
        if behavior.started is not None:
            behavior.started.set()
        for chunk in behavior.stdout:
            if on_stdout is not None:
                on_stdout(chunk)
            await asyncio.sleep(0)
        for chunk in behavior.stderr:
            if on_stderr is not None:
                on_stderr(chunk)
            await asyncio.sleep(0)
        if behavior.hang:
            await asyncio.Event().wait()
        if behavior.error is not None:
            raise behavior.error
        return CommandResult(
            exit_code=behavior.exit_code,
            stdout="".join(behavior.stdout),
            stderr="".join(behavior.stderr),
        )


class FakeSandboxProvider:
    """In-memory sandbox provider with controllable failures."""

    def __init__(self) -> None:
        self.behavior = FakeBehavior()
        self.sessions: dict[str, FakeSandboxSession] = {}
        self.expired: set[str] = set()
        self.connects: list[str] = []
        self.created = 0
        self.fail_create = False
        self.timeouts: list[int] = []

    async def connect(self, sandbox_id: str, timeout_seconds: int) -> FakeSandboxSession:
        self.connects.append(sandbox_id)
        if sandbox_id not in self.sessions or sandbox_id in self.expired:
            raise SandboxNotFoundError(f"Sandbox not found: {sandbox_id}")
        self.timeouts.append(timeout_seconds)
        return self.sessions[sandbox_id]

    async def create(self, timeout_seconds: int) -> FakeSandboxSession:
        if self.fail_create:
            raise SandboxError("create failed")
        self.created += 1
        session = FakeSandboxSession(f"fake-{self.created}", self.behavior)
        self.sessions[session.sandbox_id] = session
        self.timeouts.append(timeout_seconds)
        return session


DEMO_TEST_CODE = "from solution import answer\n\ndef test_answer():\n    assert answer() == 42\n"


@pytest.fixture
def sample_config_dict():
    """Sample configuration dictionary for testing."""
    return {
        "storage": {"kv": {"backend": "memory"}},
        "rate_limit": {"limit": 5, "window_seconds": 600},
        "idempotency": {"ttl_seconds": 300},
        "sandbox": {
            "backend": "local",
            "idle_timeout_seconds": 30,
            "command_timeout_seconds": 2,
        },
        "playground": {"timeout_seconds": 1},
        "server": {"port": 9000},
    }


@pytest.fixture
def kv_store():
    """Create a memory KV store."""
    return MemoryKVStore()


@pytest.fixture
def sandbox_provider():
    """Create a fake sandbox provider."""
    return FakeSandboxProvider()


@pytest.fixture
def demo_challenge():
    """A challenge with no extra requirements."""
    return Challenge(id="demo-001", title="Demo", test_code=DEMO_TEST_CODE, broken_code="def answer():\n    return 0\n")


@pytest.fixture
def challenge_repo(demo_challenge):
    """Repository with the demo challenge and one that installs packages."""
    with_deps = Challenge(id="deps-001", test_code=DEMO_TEST_CODE, requirements=("tiktoken==0.7.0",))
    return InMemoryChallengeRepository([demo_challenge, with_deps])


@pytest.fixture
def engine(sample_config_dict, kv_store, sandbox_provider, challenge_repo):
    """Engine wired to in-memory store and fake sandboxes."""
    return Engine(
        Config.from_dict(sample_config_dict),
        kv=kv_store,
        sandbox_provider=sandbox_provider,
        challenges=challenge_repo,
    )


@pytest.fixture
def metrics():
    """Collect (name, value, labels) for every metric emitted during a test."""
    received: list[tuple] = []

    def callback(name, value, labels):
        received.append((name, value, labels))

    register_metric_callback(callback)
    yield received
    unregister_metric_callback(callback)
