"""Free-form code runner.

Runs a snippet (no tests, no scoring) in the caller's sandbox, or a fresh
one, and returns its captured output. It is not rate limited or guarded by
idempotency keys; it shares only the sandbox broker with submissions.
"""

from typing import Any

from tentropy_core.config import PlaygroundConfig
from tentropy_core.exceptions import SandboxTimeoutError
from tentropy_core.observability import Timer, emit_counter, get_logger
from tentropy_core.sandbox import SandboxBroker

logger = get_logger(__name__)


class CodePlayground:
    """Runs arbitrary code with a short timeout."""

    def __init__(self, broker: SandboxBroker, config: PlaygroundConfig | None = None) -> None:
        self.broker = broker
        self.config = config or PlaygroundConfig()

    async def run(self, code: str, sandbox_id: str | None = None) -> dict[str, Any]:
        """Run code and return ``{stdout, stderr, sandboxID}``.

        A timeout is reported in ``stderr`` rather than raised.

        Raises:
            SandboxError: If no sandbox can be obtained or the write fails
        """
        lease = await self.broker.acquire(sandbox_id)
        try:
            await lease.session.write_file(self.config.path, code)
            async with Timer() as timer:
                try:
                    result = await lease.session.run_command(
                        f"python {self.config.path}",
                        timeout_seconds=self.config.timeout_seconds,
                    )
                    stdout, stderr = result.stdout, result.stderr
                except SandboxTimeoutError as e:
                    stdout, stderr = "", str(e)
                    emit_counter("playground.timeout")
            logger.info(
                "Playground run finished",
                context={"sandbox_id": lease.sandbox_id},
                duration_ms=timer.duration_ms,
            )
        finally:
            await self.broker.release(lease)

        return {"stdout": stdout, "stderr": stderr, "sandboxID": lease.sandbox_id}
