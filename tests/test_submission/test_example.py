"""End-to-end runs of the bundled challenge in a local sandbox."""

import shlex
import sys

import pytest

from tentropy_core.backends.kv.memory import MemoryKVStore
from tentropy_core.backends.sandbox.local import LocalSandboxProvider
from tentropy_core.challenges import InMemoryChallengeRepository
from tentropy_core.config import SandboxConfig
from tentropy_core.idempotency import IdempotencyGuard
from tentropy_core.sandbox import SandboxBroker
from tentropy_core.submission import (
    CallerIdentity,
    OutputChunk,
    SubmissionOrchestrator,
    SubmissionRequest,
)

CHALLENGE_ID = "ai-cost-cache-002"

# The interpreter running this suite, so the sandbox has pytest available
TEST_COMMAND = f"{shlex.quote(sys.executable)} -m pytest -s -p no:cacheprovider test_main.py"


def make_orchestrator(provider: LocalSandboxProvider) -> SubmissionOrchestrator:
    kv = MemoryKVStore()
    config = SandboxConfig(backend="local", test_command=TEST_COMMAND, command_timeout_seconds=60)
    return SubmissionOrchestrator(
        InMemoryChallengeRepository.from_path(),
        SandboxBroker(provider, kv, lease_ttl_seconds=config.lease_ttl_seconds),
        IdempotencyGuard(kv),
        config=config,
    )


async def submit(orchestrator: SubmissionOrchestrator, code: str, sandbox_id: str | None = None):
    """Run one submission. Returns (output, result)."""
    request = SubmissionRequest(
        code=code,
        challenge_id=CHALLENGE_ID,
        identity=CallerIdentity(address="10.0.0.1"),
        sandbox_id=sandbox_id,
        idempotency_key="attempt",
    )
    run = await orchestrator.start(request)
    events = [event async for event in run.events()]
    await run.wait()
    output = "".join(e.text for e in events if isinstance(e, OutputChunk))
    return output, events[-1]


class TestCacheChallengeEndToEnd:
    """The cache challenge submitted the way a user would."""

    @pytest.mark.asyncio
    async def test_unrelated_code_fails(self):
        """Code that does not define the expected API fails with output."""
        provider = LocalSandboxProvider()
        try:
            output, result = await submit(make_orchestrator(provider), "print(1)")
        finally:
            await provider.close()

        assert not result.success
        assert result.outcome == "failure"
        assert result.sandbox_id
        assert output.startswith("Running tests...\n\n")
        assert "PromptCache" in output

    @pytest.mark.asyncio
    async def test_starter_code_fails_and_solution_passes(self):
        """Fixing the starter code turns the same sandbox green."""
        provider = LocalSandboxProvider()
        orchestrator = make_orchestrator(provider)
        challenge = await orchestrator.challenges.get_challenge_by_id(CHALLENGE_ID)
        try:
            _, broken = await submit(orchestrator, challenge.broken_code)
            output, fixed = await submit(orchestrator, challenge.solution_code, broken.sandbox_id)
        finally:
            await provider.close()

        assert broken.outcome == "failure"
        assert not broken.success
        assert fixed.success
        assert fixed.outcome == "success"
        assert fixed.sandbox_id == broken.sandbox_id
        assert "billed calls: 1" in output
        assert "3 passed" in output
