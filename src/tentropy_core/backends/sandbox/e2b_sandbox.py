"""E2B cloud sandbox backend."""

from typing import Any

from e2b import CommandExitException, NotFoundException, SandboxException, TimeoutException
from e2b_code_interpreter import AsyncSandbox

from tentropy_core.exceptions import SandboxError, SandboxNotFoundError, SandboxTimeoutError
from tentropy_core.protocols.sandbox import CommandResult, OutputCallback


class E2BSandboxSession:
    """A live E2B sandbox."""

    def __init__(self, sandbox: AsyncSandbox) -> None:
        self.sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return self.sandbox.sandbox_id

    async def write_file(self, path: str, content: str) -> None:
        try:
            await self.sandbox.files.write(path, content)
        except SandboxException as e:
            raise SandboxError(f"Failed to write {path}: {e}") from e

    async def run_command(
        self,
        command: str,
        timeout_seconds: float,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        try:
            result = await self.sandbox.commands.run(
                command,
                timeout=timeout_seconds,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except CommandExitException as e:
            # Non-zero exit is an ordinary outcome (failing tests)
            return CommandResult(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
        except TimeoutException as e:
            raise SandboxTimeoutError(f"Command timed out after {timeout_seconds}s") from e
        except SandboxException as e:
            raise SandboxError(str(e)) from e

        return CommandResult(exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)


class E2BSandboxProvider:
    """Creates and reconnects E2B sandboxes.

    Sandboxes are created from ``template_id`` (the E2B "base" image by
    default) and are reclaimed by E2B once idle longer than the timeout
    given at create or connect time.
    """

    def __init__(
        self,
        api_key: str | None = None,
        template_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the provider.

        Args:
            api_key: E2B API key (falls back to the E2B_API_KEY env var)
            template_id: Sandbox template; "base" when unset
            **kwargs: Ignored (for compatibility with other backends)
        """
        self.api_key = api_key
        self.template_id = template_id or "base"

    async def connect(self, sandbox_id: str, timeout_seconds: int) -> E2BSandboxSession:
        try:
            sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self.api_key)
            await sandbox.set_timeout(timeout_seconds)
        except NotFoundException as e:
            raise SandboxNotFoundError(f"Sandbox not found: {sandbox_id}") from e
        except SandboxException as e:
            raise SandboxError(f"Failed to connect to sandbox {sandbox_id}: {e}") from e
        return E2BSandboxSession(sandbox)

    async def create(self, timeout_seconds: int) -> E2BSandboxSession:
        try:
            sandbox = await AsyncSandbox.create(
                template=self.template_id,
                timeout=timeout_seconds,
                api_key=self.api_key,
            )
        except SandboxException as e:
            raise SandboxError(f"Failed to create sandbox: {e}") from e
        return E2BSandboxSession(sandbox)
