"""Local subprocess-based sandbox for development."""

import asyncio
import codecs
import contextlib
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Iterator
from uuid import uuid4

from tentropy_core.exceptions import SandboxError, SandboxNotFoundError, SandboxTimeoutError
from tentropy_core.protocols.sandbox import CommandResult, OutputCallback


async def _pump(
    stream: asyncio.StreamReader,
    sink: list[str],
    callback: OutputCallback | None,
) -> None:
    # Multi-byte characters may straddle reads
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(4096)
        text = decoder.decode(data, final=not data)
        if text:
            sink.append(text)
            if callback is not None:
                callback(text)
        if not data:
            return


class LocalSandboxSession:
    """A temporary working directory on the host."""

    def __init__(self, provider: "LocalSandboxProvider", sandbox_id: str, workdir: Path) -> None:
        self.provider = provider
        self._sandbox_id = sandbox_id
        self.workdir = workdir

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    def _resolve(self, path: str) -> Path:
        target = (self.workdir / path).resolve()
        if self.workdir.resolve() not in target.parents:
            raise SandboxError(f"Path escapes sandbox: {path}")
        return target

    async def write_file(self, path: str, content: str) -> None:
        self.provider.touch(self._sandbox_id)
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def run_command(
        self,
        command: str,
        timeout_seconds: float,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        with self.provider.in_use(self._sandbox_id):
            return await self._run(command, timeout_seconds, on_stdout, on_stderr)

    async def _run(
        self,
        command: str,
        timeout_seconds: float,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
    ) -> CommandResult:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self.workdir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        if proc.stdout is None or proc.stderr is None:
            proc.kill()
            raise SandboxError(f"Command output is not readable: {command}")
        stdout: list[str] = []
        stderr: list[str] = []
        pumps = asyncio.gather(
            _pump(proc.stdout, stdout, on_stdout),
            _pump(proc.stderr, stderr, on_stderr),
        )

        try:
            await asyncio.wait_for(asyncio.shield(pumps), timeout=timeout_seconds)
            await proc.wait()
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            await pumps
            raise SandboxTimeoutError(f"Command timed out after {timeout_seconds}s")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            pumps.cancel()
            raise

        return CommandResult(
            exit_code=proc.returncode or 0,
            stdout="".join(stdout),
            stderr="".join(stderr),
        )


class LocalSandboxProvider:
    """Subprocess-based sandbox provider for local development.

    WARNING: NOT for production use. Provides no security isolation.
    Commands run on the host with the server's own permissions.

    Idle expiry is emulated: a sandbox untouched for longer than the
    timeout it was created or last connected with is removed, and a later
    ``connect`` raises SandboxNotFoundError just like a reclaimed E2B
    sandbox would. Sandboxes nobody reconnects to are swept on the next
    create or connect.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, **kwargs: Any) -> None:
        """Initialize local sandbox provider.

        Args:
            clock: Time source used for idle expiry
            **kwargs: Ignored (for compatibility with other backends)
        """
        self._clock = clock
        self._workdirs: dict[str, Path] = {}
        self._idle_timeouts: dict[str, float] = {}
        self._last_used: dict[str, float] = {}
        self._running: dict[str, int] = {}

    def touch(self, sandbox_id: str) -> None:
        if sandbox_id in self._workdirs:
            self._last_used[sandbox_id] = self._clock()

    @contextlib.contextmanager
    def in_use(self, sandbox_id: str) -> Iterator[None]:
        """Keep a sandbox from idling out while a command runs in it."""
        self._running[sandbox_id] = self._running.get(sandbox_id, 0) + 1
        self.touch(sandbox_id)
        try:
            yield
        finally:
            self.touch(sandbox_id)
            if self._running[sandbox_id] == 1:
                del self._running[sandbox_id]
            else:
                self._running[sandbox_id] -= 1

    @property
    def sandbox_ids(self) -> list[str]:
        return list(self._workdirs)

    def _expired(self, sandbox_id: str) -> bool:
        if sandbox_id in self._running:
            return False
        idle = self._clock() - self._last_used.get(sandbox_id, 0)
        return idle > self._idle_timeouts.get(sandbox_id, 0)

    async def sweep(self) -> None:
        """Destroy every sandbox that has idled out."""
        for sandbox_id in [s for s in self._workdirs if self._expired(s)]:
            await self.destroy(sandbox_id)

    async def create(self, timeout_seconds: int) -> LocalSandboxSession:
        """Create a new sandbox in a fresh temporary directory."""
        await self.sweep()
        sandbox_id = f"local-{uuid4().hex[:12]}"
        workdir = Path(tempfile.mkdtemp(prefix="tentropy-sandbox-"))
        self._workdirs[sandbox_id] = workdir
        self._idle_timeouts[sandbox_id] = timeout_seconds
        self.touch(sandbox_id)
        return LocalSandboxSession(self, sandbox_id, workdir)

    async def connect(self, sandbox_id: str, timeout_seconds: int) -> LocalSandboxSession:
        """Reattach to a sandbox that has not idled out."""
        workdir = self._workdirs.get(sandbox_id)
        if workdir is None:
            raise SandboxNotFoundError(f"Sandbox not found: {sandbox_id}")
        if self._expired(sandbox_id):
            await self.destroy(sandbox_id)
            raise SandboxNotFoundError(f"Sandbox expired: {sandbox_id}")
        await self.sweep()

        self._idle_timeouts[sandbox_id] = timeout_seconds
        self.touch(sandbox_id)
        return LocalSandboxSession(self, sandbox_id, workdir)

    async def destroy(self, sandbox_id: str) -> None:
        """Destroy a sandbox and clean up resources."""
        workdir = self._workdirs.pop(sandbox_id, None)
        self._idle_timeouts.pop(sandbox_id, None)
        self._last_used.pop(sandbox_id, None)
        if workdir and workdir.exists():
            shutil.rmtree(workdir, ignore_errors=True)

    async def close(self) -> None:
        """Remove every sandbox this provider created."""
        for sandbox_id in list(self._workdirs):
            await self.destroy(sandbox_id)
