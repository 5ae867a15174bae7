"""Child process ownership with isolation and reliable termination.

dual-executor runtime module

This module provides:
- LaunchSpec: immutable argv + working directory pair for one role
- ProcessHandle: one live child process with its three pipes

Key design points:
- POSIX: start_new_session=True so a terminal Ctrl+C reaches only the supervisor
- Windows: CREATE_NEW_PROCESS_GROUP for the same isolation
- kill() targets the process group, not just the main process
- The cooperative stop is the literal line ``stop\\n`` on stdin
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import LaunchError, LaunchFailureReason

__all__ = [
    "IS_WINDOWS",
    "LaunchSpec",
    "ProcessHandle",
    "STOP_COMMAND",
    "normalize_exit_code",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

STOP_COMMAND = b"stop\n"

# StreamReader buffer limit for the child's stdout/stderr (asyncio's default)
STREAM_LIMIT = 2 ** 16

# Default timeouts
DEFAULT_STOP_TIMEOUT = 5.0  # seconds to wait after the stop line
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL


def normalize_exit_code(returncode: int) -> int:
    """Map asyncio's negative "killed by signal N" code to the shell's 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


@dataclass(frozen=True)
class LaunchSpec:
    """How to start one supervised process.

    Attributes:
        command: Argument vector (first element is the executable)
        working_directory: Directory the process starts in
    """

    command: tuple[str, ...]
    working_directory: Path = Path(".")

    def __post_init__(self) -> None:
        # Accept any sequence and path-like input but store immutable values
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "working_directory", Path(self.working_directory))
        if not self.command or not self.command[0]:
            raise ValueError("LaunchSpec.command must be non-empty")

    @classmethod
    def from_command_line(cls, command: str, working_directory: str | Path = ".") -> "LaunchSpec":
        """Build a spec from a configured command string.

        The string is split on single spaces with no quoting or escaping
        support; trailing empty tokens are dropped.

        Args:
            command: Command string, e.g. ``"java -jar server.jar"``
            working_directory: Working directory (default ``.``)
        """
        tokens = command.split(" ")
        while tokens and not tokens[-1]:
            tokens.pop()
        return cls(command=tuple(tokens), working_directory=Path(working_directory))


class _ExitWatchingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports the moment the process exits.

    Process.wait() only returns once every pipe has reached EOF as well, which
    never happens while a grandchild holds stdout open or unread output sits
    in a paused pipe.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited = asyncio.Event()

    def process_exited(self) -> None:
        super().process_exited()
        self.exited.set()


class ProcessHandle:
    """One supervised child process.

    The handle owns the process's stdin/stdout/stderr. Closing the handle
    releases all three pipes.

    Example:
        handle = await ProcessHandle.launch(LaunchSpec.from_command_line("my-service --port 80"))
        if not await handle.request_graceful_stop(5.0):
            handle.kill()
        await handle.wait_for_exit()
        handle.close()
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: LaunchSpec,
        transport: asyncio.SubprocessTransport,
        exited: asyncio.Event,
    ) -> None:
        self._process = process
        self._transport = transport
        self._exited = exited
        self.spec = spec

    @classmethod
    async def launch(cls, spec: LaunchSpec, *, inherit_io: bool = False) -> "ProcessHandle":
        """Start a child process.

        Args:
            spec: What to run and where
            inherit_io: Share the supervisor's standard streams instead of pipes

        Returns:
            Handle to the running process

        Raises:
            LaunchError: If the executable or working directory is unusable
        """
        cwd = spec.working_directory
        if not cwd.is_dir():
            raise LaunchError(
                LaunchFailureReason.INVALID_WORKING_DIR,
                spec.command,
                cwd,
                "not an existing directory",
            )

        loop = asyncio.get_running_loop()
        protocol = _ExitWatchingProtocol(limit=STREAM_LIMIT, loop=loop)
        pipe = None if inherit_io else asyncio.subprocess.PIPE
        try:
            transport, _ = await loop.subprocess_exec(
                lambda: protocol,
                *spec.command,
                stdin=pipe,
                stdout=pipe,
                stderr=pipe,
                cwd=cwd,
                **cls._build_subprocess_kwargs(inherit_io),
            )
        except FileNotFoundError as e:
            raise LaunchError(LaunchFailureReason.NOT_FOUND, spec.command, cwd, str(e)) from e
        except PermissionError as e:
            raise LaunchError(LaunchFailureReason.PERMISSION_DENIED, spec.command, cwd, str(e)) from e
        except NotADirectoryError as e:
            raise LaunchError(LaunchFailureReason.INVALID_WORKING_DIR, spec.command, cwd, str(e)) from e
        except OSError as e:
            reason = LaunchFailureReason.OS_ERROR
            if e.errno == errno.ENOEXEC:
                reason = LaunchFailureReason.PERMISSION_DENIED
            raise LaunchError(reason, spec.command, cwd, str(e)) from e

        process = asyncio.subprocess.Process(transport, protocol, loop)
        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.command[0]} cwd={cwd}"
        )
        return cls(process, spec, transport, protocol.exited)

    @staticmethod
    def _build_subprocess_kwargs(inherit_io: bool) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        # An inheriting child stays in our group so it keeps the terminal
        if inherit_io:
            return kwargs

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self._process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def is_alive(self) -> bool:
        """Non-blocking liveness probe."""
        return self._process.returncode is None

    async def request_graceful_stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> bool:
        """Ask the process to stop by writing ``stop\\n`` to its stdin.

        A failed write means the process (or its stdin) is already gone. That
        is not an error: the method returns at once and reports whether the
        process is still running, leaving any kill to the caller.

        Args:
            timeout: Seconds to wait for the exit after the line is sent

        Returns:
            True if the process exited within ``timeout``
        """
        if not self.is_alive():
            return True

        stdin = self._process.stdin
        try:
            if stdin is None or stdin.is_closing():
                raise BrokenPipeError("stdin already closed")
            stdin.write(STOP_COMMAND)
            await asyncio.wait_for(stdin.drain(), timeout=timeout)
            logger.debug(f"Sent stop line to pid={self.pid}")
        except asyncio.TimeoutError:
            logger.debug(f"Stop line not accepted within {timeout}s pid={self.pid}")
            return not self.is_alive()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Stop line not delivered pid={self.pid}: {e}")
            return not self.is_alive()

        return await self.wait_for_exit(timeout) is not None

    def kill(self) -> None:
        """Forcefully terminate the process group. Idempotent."""
        if not self.is_alive():
            return

        try:
            if IS_WINDOWS:
                self._process.kill()
                logger.debug(f"Called kill() on pid={self.pid}")
            else:
                self._posix_kill()
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={self.pid}")

    def _posix_kill(self) -> None:
        """Send SIGKILL to the process group on POSIX systems."""
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(self.pid)
            if pgid == os.getpgid(0):
                # Inherited-IO children share our group; never signal ourselves
                self._process.kill()
                return
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            self._process.kill()

    async def wait_for_exit(self, timeout: float | None = None) -> int | None:
        """Block until the process exits.

        Returns as soon as the process itself is gone, whether or not its
        pipes have been drained or are still held open by a grandchild.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Returns:
            The exit code, or None if the timeout elapsed first
        """
        if self.returncode is not None:
            return self.returncode
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.returncode

    @property
    def closed(self) -> bool:
        return self._transport.is_closing()

    def close(self) -> None:
        """Release stdin, stdout and stderr.

        Readers see end-of-stream. A process still running at this point is
        killed by the transport.
        """
        if self._transport.is_closing():
            return
        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                stream.feed_eof()
        self._transport.close()
        logger.debug(f"Closed pipes of pid={self.pid}")

    def __repr__(self) -> str:
        status = "running" if self.is_alive() else f"exited({self.returncode})"
        return f"ProcessHandle(pid={self.pid}, argv0={self.spec.command[0]!r}, status={status})"
