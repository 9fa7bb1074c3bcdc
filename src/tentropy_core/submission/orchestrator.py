"""Submission orchestration.

Each admitted submission becomes a SubmissionRun: an explicit state
machine driven by its own asyncio task. The driver pushes output chunks
and finally exactly one SubmissionResult into a channel; the HTTP layer
only consumes that channel. Keeping the driver separate from the response
means cleanup (sandbox lease, idempotency key) runs on every exit path,
including a client that disconnects mid-stream.
"""

import asyncio
import shlex
from typing import AsyncIterator, Awaitable, Callable

from tentropy_core.challenges import Challenge, ChallengeRepository
from tentropy_core.config import TIMEOUT_GRACE_SECONDS, SandboxConfig
from tentropy_core.exceptions import (
    ChallengeNotFoundError,
    DuplicateSubmissionError,
    SandboxError,
    SandboxTimeoutError,
)
from tentropy_core.idempotency import IdempotencyGuard
from tentropy_core.observability import Timer, emit_counter, emit_timer, get_logger
from tentropy_core.protocols import SandboxSession
from tentropy_core.sandbox import SandboxBroker, SandboxLease
from tentropy_core.submission.channel import Channel
from tentropy_core.submission.models import (
    OutputChunk,
    SubmissionEvent,
    SubmissionRequest,
    SubmissionResult,
    SubmissionState,
    check_transition,
)

logger = get_logger(__name__)

RUNNING_TESTS_BANNER = "Running tests...\n\n"


class SubmissionRun:
    """One execution of a submission, from admission to a terminal result."""

    def __init__(
        self,
        request: SubmissionRequest,
        challenge: Challenge,
        broker: SandboxBroker,
        guard: IdempotencyGuard,
        config: SandboxConfig,
    ) -> None:
        self.request = request
        self.challenge = challenge
        self.broker = broker
        self.guard = guard
        self.config = config

        self.state = SubmissionState.ADMITTED
        self.result: SubmissionResult | None = None
        self.lease: SandboxLease | None = None
        self.channel: Channel[SubmissionEvent] = Channel()
        self._task: asyncio.Task[None] | None = None
        self._started = False
        self._cancel_requested = False

        self._handlers: dict[SubmissionState, Callable[[], Awaitable[None]]] = {
            SubmissionState.ADMITTED: self._acquire_sandbox,
            SubmissionState.SANDBOX_READY: self._stage_files,
            SubmissionState.FILES_STAGED: self._start_tests,
            SubmissionState.RUNNING: self._run_tests,
        }

    @property
    def sandbox_id(self) -> str:
        if self.lease is not None:
            return self.lease.sandbox_id
        return self.request.sandbox_id or ""

    @property
    def session(self) -> SandboxSession:
        if self.lease is None:
            raise SandboxError(f"No sandbox held in state {self.state.value}")
        return self.lease.session

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self, on_done: Callable[["SubmissionRun"], None] | None = None) -> None:
        """Start the driver task. The task inherits the caller's logging context.

        Args:
            on_done: Called with this run once the driver, cleanup included, has finished
        """
        if self._task is None:
            self._task = asyncio.create_task(self._drive())
            if on_done is not None:
                self._task.add_done_callback(lambda _: on_done(self))

    def cancel(self) -> None:
        """Request cancellation. The remote command may keep running orphaned.

        Has no effect once the result has been emitted, so cleanup of a
        finished run is never interrupted.
        """
        if self._task is None or self._task.done() or self.state.is_terminal:
            return
        if not self._started:
            # A task cancelled before its first step never runs its cleanup
            self._cancel_requested = True
            return
        self._task.cancel()

    async def wait(self) -> SubmissionResult | None:
        """Wait for the driver to finish, including cleanup."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.result

    async def events(self) -> AsyncIterator[SubmissionEvent]:
        """Yield output chunks in production order, then the result.

        Closing this iterator early (client went away) cancels the run.
        """
        try:
            async for event in self.channel:
                yield event
        finally:
            self.cancel()

    def _emit(self, text: str) -> None:
        if text:
            self.channel.send(OutputChunk(text))

    def _transition(self, target: SubmissionState) -> None:
        check_transition(self.state, target)
        logger.debug(
            "Submission state change",
            context={"from": self.state.value, "to": target.value, "sandbox_id": self.sandbox_id},
        )
        self.state = target

    def _finish(self, target: SubmissionState, message: str | None = None) -> None:
        if message:
            self._emit(message)
        self._transition(target)
        self.result = SubmissionResult(
            success=target is SubmissionState.SUCCEEDED,
            sandbox_id=self.sandbox_id,
            outcome=target.outcome,
        )
        self.channel.send(self.result)

    async def _acquire_sandbox(self) -> None:
        self.lease = await self.broker.acquire(self.request.sandbox_id)
        self._transition(SubmissionState.SANDBOX_READY)

    async def _stage_files(self) -> None:
        session = self.session
        await session.write_file(self.config.solution_path, self.request.code)
        await session.write_file(self.config.test_path, self.challenge.test_code)

        if self.challenge.requirements:
            await self._install_requirements()
        self._transition(SubmissionState.FILES_STAGED)

    async def _install_requirements(self) -> None:
        packages = " ".join(shlex.quote(r) for r in self.challenge.requirements)
        session = self.session
        await self.broker.renew(self.lease)
        async with Timer() as timer:
            try:
                result = await session.run_command(
                    f"pip install -q {packages}",
                    timeout_seconds=self.config.install_timeout_seconds,
                )
            except SandboxTimeoutError as e:
                # Not the scored run: a slow install is an infrastructure problem
                raise SandboxError(f"Dependency installation timed out: {e}") from e
        emit_timer("submission.install", timer.duration_ms)
        if not result.ok:
            raise SandboxError(f"Dependency installation failed: {result.stderr.strip()}")

    async def _start_tests(self) -> None:
        self._emit(RUNNING_TESTS_BANNER)
        self._transition(SubmissionState.RUNNING)

    async def _run_tests(self) -> None:
        session = self.session
        timeout = self.config.command_timeout_seconds
        await self.broker.renew(self.lease)
        try:
            result = await asyncio.wait_for(
                session.run_command(
                    self.config.test_command,
                    timeout_seconds=timeout,
                    on_stdout=self._emit,
                    on_stderr=self._emit,
                ),
                timeout=timeout + TIMEOUT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise SandboxTimeoutError(f"Command timed out after {timeout}s") from e

        if result.ok:
            self._finish(SubmissionState.SUCCEEDED)
        else:
            self._finish(SubmissionState.FAILED)

    async def _drive(self) -> None:
        self._started = True
        emit_counter("submission.started")
        with Timer() as timer:
            try:
                if self._cancel_requested:
                    raise asyncio.CancelledError()
                while not self.state.is_terminal:
                    await self._handlers[self.state]()
            except asyncio.CancelledError:
                if not self.state.is_terminal:
                    self._finish(SubmissionState.CANCELLED, "\nSubmission cancelled.\n")
                raise
            except SandboxTimeoutError as e:
                logger.info("Submission timed out", context={"sandbox_id": self.sandbox_id})
                self._finish(SubmissionState.FAILED, f"\nSystem Error: {e}\n")
            except Exception as e:
                logger.error(
                    "Submission crashed",
                    context={"state": self.state.value, "sandbox_id": self.sandbox_id},
                    error=e,
                )
                self._finish(SubmissionState.ERRORED, f"\nCritical Error: {e}\n")
            finally:
                self._record(timer.duration_ms)
                await self._cleanup()

    def _record(self, duration_ms: float) -> None:
        outcome = self.state.outcome
        emit_counter(f"submission.{outcome}")
        emit_timer("submission.duration", duration_ms, {"outcome": outcome})
        logger.info(
            "Submission finished",
            context={"outcome": outcome, "sandbox_id": self.sandbox_id},
            duration_ms=duration_ms,
        )

    async def _cleanup(self) -> None:
        try:
            key = self.request.scoped_key
            if key:
                await self.guard.mark_terminal(key)
            if self.lease is not None:
                await self.broker.release(self.lease)
            if key:
                await asyncio.shield(self.guard.finish(key))
        finally:
            self.channel.close()


class SubmissionOrchestrator:
    """Admits submissions and tracks their runs.

    Example:
        run = await orchestrator.start(request)
        async for event in run.events():
            ...
    """

    def __init__(
        self,
        challenges: ChallengeRepository,
        broker: SandboxBroker,
        guard: IdempotencyGuard,
        config: SandboxConfig | None = None,
    ) -> None:
        self.challenges = challenges
        self.broker = broker
        self.guard = guard
        self.config = config or SandboxConfig()
        self._runs: set[SubmissionRun] = set()

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def start(self, request: SubmissionRequest) -> SubmissionRun:
        """Admit a submission and start running it.

        Nothing is acquired unless the challenge exists and the
        idempotency key (when given) is not already in use.

        Raises:
            ChallengeNotFoundError: If the challenge id is unknown
            DuplicateSubmissionError: If the key is held by another submission
            StoreUnavailableError: If the idempotency store cannot be reached
        """
        challenge = await self.challenges.get_challenge_by_id(request.challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(request.challenge_id)

        key = request.scoped_key
        if key:
            outcome = await self.guard.begin(key)
            if outcome.is_conflict:
                status = outcome.existing_status.value if outcome.existing_status else None
                raise DuplicateSubmissionError(request.idempotency_key or key, status)

        run = SubmissionRun(request, challenge, self.broker, self.guard, self.config)
        self._runs.add(run)
        run.start(on_done=self._runs.discard)
        logger.info("Submission admitted", context={"challenge_id": challenge.id})
        return run

    async def aclose(self) -> None:
        """Cancel every in-flight run and wait for its cleanup."""
        runs = list(self._runs)
        for run in runs:
            run.cancel()
        for run in runs:
            await run.wait()
