"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Callable, Iterable

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_CHILD_PATH = FIXTURES_DIR / "fake_child.py"

from dual_executor.runtime.process_handle import LaunchSpec  # noqa: E402


def fake_child_spec(*args: str, cwd: Path | None = None) -> LaunchSpec:
    """LaunchSpec running tests/fixtures/fake_child.py with the current interpreter."""
    return LaunchSpec(
        command=(sys.executable, str(FAKE_CHILD_PATH), *args),
        working_directory=cwd or PROJECT_ROOT,
    )


def python_spec(code: str, cwd: Path | None = None) -> LaunchSpec:
    """LaunchSpec running ``python -c code``."""
    return LaunchSpec(
        command=(sys.executable, "-c", code),
        working_directory=cwd or PROJECT_ROOT,
    )


# =============================================================================
# Fake process handles
# =============================================================================


class FakeWriter:
    """Stand-in for a child's stdin StreamWriter."""

    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("fake stdin closed")
        self.data += data

    async def drain(self) -> None:
        if self.closed:
            raise ConnectionResetError("fake stdin closed")

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    @property
    def lines(self) -> list[bytes]:
        return bytes(self.data).splitlines()


_pids = itertools.count(1000)


class FakeProcessHandle:
    """In-memory ProcessHandle that records every stop and kill.

    Must be created inside a running event loop.
    """

    def __init__(
        self,
        spec: LaunchSpec,
        *,
        honors_stop: bool = True,
        alive: bool = True,
        exit_code: int = 0,
    ) -> None:
        self.spec = spec
        self.pid = next(_pids)
        self.honors_stop = honors_stop
        self.stdin = FakeWriter()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self._exited = asyncio.Event()
        self.stop_calls = 0
        self.kill_calls = 0
        self.events: list[tuple[str, float]] = []
        if not alive:
            self.exit(exit_code)

    def _record(self, event: str) -> None:
        self.events.append((event, asyncio.get_running_loop().time()))

    def exit(self, code: int, close_streams: bool = True) -> None:
        """Simulate the process exiting on its own."""
        if self.returncode is not None:
            return
        self.returncode = code
        self._exited.set()
        if close_streams:
            self.stdout.feed_eof()
            self.stderr.feed_eof()

    def is_alive(self) -> bool:
        return self.returncode is None

    async def request_graceful_stop(self, timeout: float = 5.0) -> bool:
        self.stop_calls += 1
        self._record("stop")
        if not self.is_alive():
            return True
        if self.honors_stop:
            self.exit(0)
            return True
        return await self.wait_for_exit(timeout) is not None

    def kill(self) -> None:
        self.kill_calls += 1
        self._record("kill")
        self.exit(-9)

    async def wait_for_exit(self, timeout: float | None = None) -> int | None:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.returncode

    @property
    def closed(self) -> bool:
        return self.stdin.closed

    def close(self) -> None:
        self.stdin.close()
        self.stdout.feed_eof()
        self.stderr.feed_eof()


def make_launcher(
    outcomes: Iterable[FakeProcessHandle | BaseException | Callable[[LaunchSpec], FakeProcessHandle]],
) -> tuple[Callable, list[LaunchSpec]]:
    """Build a launcher returning (or raising) the given outcomes in order.

    Returns:
        The launcher and the list of specs it was called with
    """
    pending = list(outcomes)
    calls: list[LaunchSpec] = []

    async def launcher(spec: LaunchSpec):
        calls.append(spec)
        outcome = pending.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome) and not isinstance(outcome, FakeProcessHandle):
            return outcome(spec)
        return outcome

    return launcher, calls


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def project_root() -> Path:
    """Project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def background_spec() -> LaunchSpec:
    return LaunchSpec(command=("background-service",))


@pytest.fixture
def foreground_spec() -> LaunchSpec:
    return LaunchSpec(command=("foreground-task",))
