"""Tests for the local subprocess sandbox."""

import asyncio

import pytest

from tentropy_core.backends.sandbox.local import LocalSandboxProvider
from tentropy_core.exceptions import SandboxError, SandboxNotFoundError, SandboxTimeoutError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestLocalSandbox:
    """Tests for LocalSandboxProvider and LocalSandboxSession."""

    @pytest.mark.asyncio
    async def test_write_and_run(self):
        """Files written are visible to commands; output is streamed."""
        provider = LocalSandboxProvider()
        try:
            session = await provider.create(timeout_seconds=30)
            await session.write_file("solution.py", "print('hi')\n")
            chunks: list[str] = []

            result = await session.run_command("cat solution.py", timeout_seconds=10, on_stdout=chunks.append)

            assert result.ok
            assert result.stdout == "print('hi')\n"
            assert "".join(chunks) == "print('hi')\n"
            assert session.sandbox_id.startswith("local-")
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_returned(self):
        """A failing command is a result, not an exception."""
        provider = LocalSandboxProvider()
        try:
            session = await provider.create(timeout_seconds=30)
            errors: list[str] = []

            result = await session.run_command("echo oops 1>&2; exit 3", timeout_seconds=10, on_stderr=errors.append)

            assert result.exit_code == 3
            assert not result.ok
            assert result.stderr == "oops\n"
            assert "".join(errors) == "oops\n"
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        """A command over its timeout raises SandboxTimeoutError."""
        provider = LocalSandboxProvider()
        try:
            session = await provider.create(timeout_seconds=30)

            with pytest.raises(SandboxTimeoutError):
                await session.run_command("exec sleep 5", timeout_seconds=0.2)
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self):
        """Writes outside the working directory are refused."""
        provider = LocalSandboxProvider()
        try:
            session = await provider.create(timeout_seconds=30)

            with pytest.raises(SandboxError, match="escapes"):
                await session.write_file("../outside.py", "x = 1\n")
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_connect_reuses_workdir(self):
        """Reconnecting sees files from the earlier session."""
        provider = LocalSandboxProvider()
        try:
            first = await provider.create(timeout_seconds=30)
            await first.write_file("solution.py", "x = 1\n")

            second = await provider.connect(first.sandbox_id, timeout_seconds=30)

            assert second.sandbox_id == first.sandbox_id
            assert (second.workdir / "solution.py").read_text() == "x = 1\n"
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_connect_unknown_raises(self):
        """Unknown ids raise SandboxNotFoundError."""
        provider = LocalSandboxProvider()

        with pytest.raises(SandboxNotFoundError):
            await provider.connect("local-missing", timeout_seconds=30)

    @pytest.mark.asyncio
    async def test_idle_sandbox_expires(self):
        """A sandbox idle past its timeout is gone."""
        clock = FakeClock()
        provider = LocalSandboxProvider(clock=clock)
        session = await provider.create(timeout_seconds=30)
        workdir = session.workdir

        clock.now = 31
        with pytest.raises(SandboxNotFoundError, match="expired"):
            await provider.connect(session.sandbox_id, timeout_seconds=30)

        assert not workdir.exists()

    @pytest.mark.asyncio
    async def test_close_removes_workdirs(self):
        """close destroys every sandbox."""
        provider = LocalSandboxProvider()
        session = await provider.create(timeout_seconds=30)

        await provider.close()

        assert not session.workdir.exists()

    @pytest.mark.asyncio
    async def test_abandoned_sandboxes_swept(self):
        """Idle sandboxes nobody reconnects to go away on the next create."""
        clock = FakeClock()
        provider = LocalSandboxProvider(clock=clock)
        try:
            abandoned = await provider.create(timeout_seconds=30)

            clock.now = 31
            fresh = await provider.create(timeout_seconds=30)

            assert provider.sandbox_ids == [fresh.sandbox_id]
            assert not abandoned.workdir.exists()
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_busy_sandbox_not_swept(self):
        """A sandbox running a command is never reclaimed."""
        clock = FakeClock()
        provider = LocalSandboxProvider(clock=clock)
        try:
            busy = await provider.create(timeout_seconds=30)
            command = asyncio.create_task(busy.run_command("sleep 0.3", timeout_seconds=10))
            await asyncio.sleep(0.05)

            clock.now = 31
            await provider.create(timeout_seconds=30)

            assert busy.sandbox_id in provider.sandbox_ids
            assert (await command).ok
        finally:
            await provider.close()
