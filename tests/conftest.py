import signal
from typing import Any, Iterable, Optional

import anyio
import pytest

from equations_mcp.sandbox import SecureExecutor
from equations_mcp.settings import EquationsSettings


class FakeStream:
    """Async byte stream that stops producing once its process is killed."""

    def __init__(self, process: "FakeProcess", chunks: Iterable[bytes]):
        self.process = process
        self.chunks = list(chunks)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            if self.process.killed:
                return
            yield chunk
            await anyio.sleep(0)
        if self.process.hang:
            await self.process.wait_killed()


class FakeProcess:
    """Stand-in for anyio.abc.Process with scripted output and exit status."""

    def __init__(
        self,
        stdout: Iterable[bytes] = (),
        stderr: Iterable[bytes] = (),
        returncode: Optional[int] = 0,
        hang: bool = False,
    ):
        self.returncode = returncode
        self.hang = hang
        self.killed = False
        self.kill_count = 0
        self.closed = False
        self._killed_event: Optional[anyio.Event] = None
        self.stdout = FakeStream(self, stdout)
        self.stderr = FakeStream(self, stderr)

    def _event(self) -> anyio.Event:
        if self._killed_event is None:
            self._killed_event = anyio.Event()
        return self._killed_event

    async def wait_killed(self) -> None:
        await self._event().wait()

    async def wait(self) -> Optional[int]:
        if self.hang:
            await self.wait_killed()
        return self.returncode

    def kill(self) -> None:
        self.kill_count += 1
        if self.killed:
            return
        self.killed = True
        self.returncode = -signal.SIGKILL
        self._event().set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True


class SpawnRecorder:
    """Records spawn calls and hands out scripted processes in order."""

    def __init__(self):
        self.calls: list[tuple[list[str], dict]] = []
        self.processes: list[FakeProcess] = []
        self.error: Optional[OSError] = None

    def queue(self, *processes: FakeProcess) -> None:
        self.processes.extend(processes)

    async def __call__(self, command: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append((command, kwargs))
        if self.error is not None:
            raise self.error
        if self.processes:
            return self.processes.pop(0)
        return FakeProcess()

    @property
    def argvs(self) -> list[list[str]]:
        return [command for command, _ in self.calls]


@pytest.fixture
def spawn() -> SpawnRecorder:
    return SpawnRecorder()


@pytest.fixture
def executor(spawn: SpawnRecorder) -> SecureExecutor:
    return SecureExecutor(spawn=spawn)


@pytest.fixture
def settings(tmp_path) -> EquationsSettings:
    return EquationsSettings(
        temp_dir=tmp_path / "jobs",
        bad_files_dir=tmp_path / "bad",
        max_concurrent_jobs=2,
    )
