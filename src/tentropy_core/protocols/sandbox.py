"""Sandbox protocol for remote code execution providers."""

from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

OutputCallback = Callable[[str], None]


@dataclass
class CommandResult:
    """Outcome of a command that ran to completion inside a sandbox."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class SandboxSession(Protocol):
    """One live, disposable execution environment."""

    @property
    def sandbox_id(self) -> str:
        """Provider identifier, usable with ``SandboxProvider.connect``."""
        ...

    async def write_file(self, path: str, content: str) -> None:
        """Write a text file into the sandbox filesystem."""
        ...

    async def run_command(
        self,
        command: str,
        timeout_seconds: float,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a shell command, relaying output as it is produced.

        A non-zero exit code is returned, not raised. Raises
        SandboxTimeoutError when the command exceeds ``timeout_seconds``
        and SandboxError when the sandbox itself fails.
        """
        ...


@runtime_checkable
class SandboxProvider(Protocol):
    """Protocol for sandbox providers (E2B, local subprocess)."""

    async def connect(self, sandbox_id: str, timeout_seconds: int) -> SandboxSession:
        """Attach to an existing sandbox, extending its idle timeout.

        Raises SandboxError (or a subclass) when it cannot be reached.
        """
        ...

    async def create(self, timeout_seconds: int) -> SandboxSession:
        """Create a new sandbox reclaimed after ``timeout_seconds`` idle."""
        ...
