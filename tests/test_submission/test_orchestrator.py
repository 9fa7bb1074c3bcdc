"""Tests for submission orchestration."""

import asyncio

import pytest

from tentropy_core.backends.kv.memory import MemoryKVStore
from tentropy_core.config import Config
from tentropy_core.engine import Engine
from tentropy_core.exceptions import (
    ChallengeNotFoundError,
    DuplicateSubmissionError,
    IllegalTransitionError,
    SandboxError,
    SandboxTimeoutError,
)
from tentropy_core.submission import (
    CallerIdentity,
    OutputChunk,
    SubmissionRequest,
    SubmissionResult,
    SubmissionRun,
    SubmissionState,
)
from tentropy_core.submission.models import check_transition
from tentropy_core.submission.orchestrator import RUNNING_TESTS_BANNER

CODE = "def answer():\n    return 42\n"


def make_request(**overrides) -> SubmissionRequest:
    fields = {
        "code": CODE,
        "challenge_id": "demo-001",
        "identity": CallerIdentity(address="10.0.0.1"),
    }
    fields.update(overrides)
    return SubmissionRequest(**fields)


async def collect(run) -> list:
    events = [event async for event in run.events()]
    await run.wait()
    return events


def output_of(events) -> str:
    return "".join(e.text for e in events if isinstance(e, OutputChunk))


class TestSubmissionStateMachine:
    """Tests for the run state machine."""

    def test_happy_path_transitions(self) -> None:
        """The forward chain is legal."""
        chain = [
            SubmissionState.ADMITTED,
            SubmissionState.SANDBOX_READY,
            SubmissionState.FILES_STAGED,
            SubmissionState.RUNNING,
            SubmissionState.SUCCEEDED,
        ]
        for current, target in zip(chain, chain[1:]):
            check_transition(current, target)

    def test_only_running_can_succeed(self) -> None:
        """Skipping the run is rejected."""
        with pytest.raises(IllegalTransitionError):
            check_transition(SubmissionState.FILES_STAGED, SubmissionState.SUCCEEDED)

    def test_terminal_states_have_no_exits(self) -> None:
        """Nothing leaves a terminal state."""
        for state in (SubmissionState.SUCCEEDED, SubmissionState.CANCELLED):
            assert state.is_terminal
            with pytest.raises(IllegalTransitionError):
                check_transition(state, SubmissionState.FAILED)

    def test_outcome_names(self) -> None:
        assert SubmissionState.SUCCEEDED.outcome == "success"
        assert SubmissionState.FAILED.outcome == "failure"
        assert SubmissionState.ERRORED.outcome == "error"
        assert SubmissionState.CANCELLED.outcome == "cancelled"

    def test_session_requires_sandbox(self, engine, demo_challenge) -> None:
        """A run that holds no sandbox has no session to use."""
        run = SubmissionRun(make_request(), demo_challenge, engine.broker, engine.guard, engine.orchestrator.config)

        with pytest.raises(SandboxError, match="No sandbox held in state admitted"):
            run.session


class TestSubmissionOrchestrator:
    """Tests for SubmissionOrchestrator and SubmissionRun."""

    @pytest.mark.asyncio
    async def test_passing_submission(self, engine, sandbox_provider, kv_store, demo_challenge) -> None:
        """Files are staged, output streamed, then one success result."""
        sandbox_provider.behavior.stdout = ["test_main.py::test_answer PASSED\n"]

        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        events = await collect(run)

        assert events[0] == OutputChunk(RUNNING_TESTS_BANNER)
        assert events[1] == OutputChunk("test_main.py::test_answer PASSED\n")
        assert events[-1] == SubmissionResult(success=True, sandbox_id="fake-1", outcome="success")
        assert run.state is SubmissionState.SUCCEEDED

        session = sandbox_provider.sessions["fake-1"]
        assert session.files == {"solution.py": CODE, "test_main.py": demo_challenge.test_code}
        assert session.commands == ["pytest -s test_main.py"]
        assert await kv_store.list("") == []

    @pytest.mark.asyncio
    async def test_failing_tests(self, engine, sandbox_provider) -> None:
        """A non-zero exit is a failure, not an error."""
        sandbox_provider.behavior.stdout = ["FAILED test_answer\n"]
        sandbox_provider.behavior.exit_code = 1

        events = await collect(await engine.orchestrator.start(make_request()))

        result = events[-1]
        assert result.success is False
        assert result.outcome == "failure"
        assert "FAILED test_answer" in output_of(events)

    @pytest.mark.asyncio
    async def test_output_order_preserved(self, engine, sandbox_provider) -> None:
        """Chunks arrive in the order they were produced."""
        sandbox_provider.behavior.stdout = ["a", "b", "c"]
        sandbox_provider.behavior.stderr = ["warning\n"]

        events = await collect(await engine.orchestrator.start(make_request()))

        assert output_of(events) == RUNNING_TESTS_BANNER + "abcwarning\n"

    @pytest.mark.asyncio
    async def test_sandbox_timeout_is_failure(self, engine, sandbox_provider) -> None:
        """A timed-out command fails with a system error line."""
        sandbox_provider.behavior.error = SandboxTimeoutError("Command timed out after 2s")

        events = await collect(await engine.orchestrator.start(make_request()))

        assert events[-1].outcome == "failure"
        assert output_of(events).endswith("\nSystem Error: Command timed out after 2s\n")

    @pytest.mark.asyncio
    async def test_hung_command_times_out(self, engine, sandbox_provider, monkeypatch) -> None:
        """The orchestrator stops waiting when the sandbox never returns."""
        monkeypatch.setattr("tentropy_core.submission.orchestrator.TIMEOUT_GRACE_SECONDS", 0.0)
        engine.orchestrator.config = engine.config.sandbox.model_copy(update={"command_timeout_seconds": 0.05})
        sandbox_provider.behavior.hang = True

        events = await collect(await engine.orchestrator.start(make_request()))

        assert events[-1].outcome == "failure"
        assert "System Error: Command timed out" in output_of(events)

    @pytest.mark.asyncio
    async def test_staging_failure_is_error(self, engine, sandbox_provider, kv_store) -> None:
        """Infrastructure failures are errors and still release everything."""
        sandbox_provider.behavior.fail_write = True

        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        events = await collect(run)

        assert events[-1] == SubmissionResult(success=False, sandbox_id="fake-1", outcome="error")
        assert "\nCritical Error: write failed: solution.py\n" in output_of(events)
        assert await kv_store.list("") == []

    @pytest.mark.asyncio
    async def test_create_failure_is_error(self, engine, sandbox_provider) -> None:
        """No sandbox means an error result echoing the requested id."""
        sandbox_provider.fail_create = True

        events = await collect(await engine.orchestrator.start(make_request(sandbox_id="gone")))

        assert events[-1] == SubmissionResult(success=False, sandbox_id="gone", outcome="error")

    @pytest.mark.asyncio
    async def test_reuses_previous_sandbox(self, engine, sandbox_provider) -> None:
        """A second submission with the returned id runs in the same sandbox."""
        first = await collect(await engine.orchestrator.start(make_request()))
        sandbox_id = first[-1].sandbox_id

        second = await collect(await engine.orchestrator.start(make_request(sandbox_id=sandbox_id)))

        assert second[-1].sandbox_id == sandbox_id
        assert sandbox_provider.created == 1

    @pytest.mark.asyncio
    async def test_expired_sandbox_replaced(self, engine, sandbox_provider) -> None:
        """An expired id falls back to a fresh sandbox."""
        first = await collect(await engine.orchestrator.start(make_request()))
        sandbox_provider.expired.add(first[-1].sandbox_id)

        second = await collect(await engine.orchestrator.start(make_request(sandbox_id=first[-1].sandbox_id)))

        assert second[-1].success
        assert second[-1].sandbox_id == "fake-2"

    @pytest.mark.asyncio
    async def test_installs_requirements(self, engine, sandbox_provider) -> None:
        """Challenges with requirements install them before testing."""
        events = await collect(await engine.orchestrator.start(make_request(challenge_id="deps-001")))

        session = sandbox_provider.sessions["fake-1"]
        assert session.commands == ["pip install -q tiktoken==0.7.0", "pytest -s test_main.py"]
        assert events[-1].success

    @pytest.mark.asyncio
    async def test_install_failure_is_error(self, engine, sandbox_provider) -> None:
        """A failed install never reaches the test run."""
        sandbox_provider.behavior.exit_code = 1
        sandbox_provider.behavior.stderr = ["No matching distribution\n"]

        events = await collect(await engine.orchestrator.start(make_request(challenge_id="deps-001")))

        assert events[-1].outcome == "error"
        assert "Dependency installation failed" in output_of(events)
        assert sandbox_provider.sessions["fake-1"].commands == ["pip install -q tiktoken==0.7.0"]

    @pytest.mark.asyncio
    async def test_unknown_challenge_rejected_before_admission(self, engine, sandbox_provider, kv_store) -> None:
        """Nothing is claimed for an unknown challenge."""
        with pytest.raises(ChallengeNotFoundError) as exc_info:
            await engine.orchestrator.start(make_request(challenge_id="nope", idempotency_key="k1"))

        assert exc_info.value.challenge_id == "nope"
        assert sandbox_provider.created == 0
        assert await kv_store.list("") == []

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, engine, sandbox_provider) -> None:
        """A second submission with an in-flight key is refused."""
        started = asyncio.Event()
        sandbox_provider.behavior.hang = True
        sandbox_provider.behavior.started = started

        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        await started.wait()

        with pytest.raises(DuplicateSubmissionError) as exc_info:
            await engine.orchestrator.start(make_request(idempotency_key="k1"))
        assert exc_info.value.key == "k1"
        assert exc_info.value.existing_status == "pending"

        run.cancel()
        await collect(run)

    @pytest.mark.asyncio
    async def test_same_key_different_callers(self, engine) -> None:
        """Keys are scoped per caller."""
        first = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        second = await engine.orchestrator.start(
            make_request(idempotency_key="k1", identity=CallerIdentity(user_id="42"))
        )

        assert (await collect(first))[-1].success
        assert (await collect(second))[-1].success

    @pytest.mark.asyncio
    async def test_key_reusable_after_completion(self, engine) -> None:
        """Once a run finishes its key is free again."""
        await collect(await engine.orchestrator.start(make_request(idempotency_key="k1")))

        events = await collect(await engine.orchestrator.start(make_request(idempotency_key="k1")))
        assert events[-1].success

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, engine, sandbox_provider, kv_store) -> None:
        """Cancellation emits a cancelled result and releases the key."""
        started = asyncio.Event()
        sandbox_provider.behavior.hang = True
        sandbox_provider.behavior.started = started

        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        await started.wait()
        run.cancel()
        events = await collect(run)

        assert events[-1] == SubmissionResult(success=False, sandbox_id="fake-1", outcome="cancelled")
        assert output_of(events).endswith("\nSubmission cancelled.\n")
        assert await kv_store.list("") == []
        assert engine.orchestrator.active_runs == 0

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(self, engine, sandbox_provider, kv_store) -> None:
        """A run cancelled immediately still cleans up."""
        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        run.cancel()
        events = await collect(run)

        assert events[-1].outcome == "cancelled"
        assert sandbox_provider.created == 0
        assert await kv_store.list("") == []

    @pytest.mark.asyncio
    async def test_consumer_going_away_cancels(self, engine, sandbox_provider, kv_store) -> None:
        """Closing the event stream early cancels the run."""
        sandbox_provider.behavior.hang = True

        run = await engine.orchestrator.start(make_request(idempotency_key="k1"))
        events = run.events()
        first = await events.__anext__()
        await events.aclose()
        result = await run.wait()

        assert first == OutputChunk(RUNNING_TESTS_BANNER)
        assert result.outcome == "cancelled"
        assert await kv_store.list("") == []

    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight(self, engine, sandbox_provider) -> None:
        """Shutdown cancels and waits for every run."""
        started = asyncio.Event()
        sandbox_provider.behavior.hang = True
        sandbox_provider.behavior.started = started

        run = await engine.orchestrator.start(make_request())
        await started.wait()
        assert engine.orchestrator.active_runs == 1

        await engine.orchestrator.aclose()

        assert run.result.outcome == "cancelled"
        assert engine.orchestrator.active_runs == 0

    @pytest.mark.asyncio
    async def test_metrics(self, engine, metrics) -> None:
        """Runs are counted and timed by outcome."""
        await collect(await engine.orchestrator.start(make_request()))

        names = [m[0] for m in metrics]
        assert "submission.started" in names
        assert "submission.success" in names
        duration = next(m for m in metrics if m[0] == "submission.duration")
        assert duration[2]["outcome"] == "success"


class TestSandboxExclusivity:
    """A sandbox stays with one run for as long as that run can last."""

    @pytest.mark.asyncio
    async def test_lease_outlives_slow_install(self, sample_config_dict, sandbox_provider, challenge_repo) -> None:
        """A run stuck installing packages still owns its sandbox."""
        now = [1_000.0]
        engine = Engine(
            Config.from_dict(sample_config_dict),
            kv=MemoryKVStore(clock=lambda: now[0]),
            sandbox_provider=sandbox_provider,
            challenges=challenge_repo,
        )
        await collect(await engine.orchestrator.start(make_request()))

        started = asyncio.Event()
        sandbox_provider.behavior.hang = True
        sandbox_provider.behavior.started = started
        installing = await engine.orchestrator.start(make_request(challenge_id="deps-001", sandbox_id="fake-1"))
        await started.wait()
        assert installing.sandbox_id == "fake-1"

        # Just short of the longest run the configuration allows
        now[0] += engine.config.sandbox.max_run_seconds - 1
        second = await engine.orchestrator.start(make_request(sandbox_id="fake-1"))
        while second.lease is None:
            await asyncio.sleep(0)

        assert second.sandbox_id == "fake-2"
        assert sandbox_provider.sessions["fake-1"].commands[-1] == "pip install -q tiktoken==0.7.0"

        await engine.orchestrator.aclose()
        assert installing.result.outcome == "cancelled"
