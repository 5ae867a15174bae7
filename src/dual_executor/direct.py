"""Direct-execute mode.

Runs a single pre-built executable with the supervisor's own console and
waits for it. There is nothing to relay and no background process.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional, TextIO

from .errors import LaunchError
from .runtime.process_handle import DEFAULT_KILL_TIMEOUT, LaunchSpec, ProcessHandle, normalize_exit_code
from .supervisor import ABNORMAL_EXIT_CODE

__all__ = ["DirectExecutor"]

logger = logging.getLogger(__name__)


class DirectExecutor:
    """Runs one executable with inherited standard streams.

    Exposes the same request_shutdown()/kill_all() hooks as Supervisor so the
    signal manager can drive either.
    """

    def __init__(self, path: str | Path, *, out: Optional[TextIO] = None, err: Optional[TextIO] = None) -> None:
        self.path = Path(path)
        self._out = out
        self._err = err
        self._handle: Optional[ProcessHandle] = None
        self._shutdown_requested = False

    def _print(self, message: str, error: bool = False) -> None:
        stream = (self._err or sys.stderr) if error else (self._out or sys.stdout)
        print(message, file=stream, flush=True)

    def check(self) -> bool:
        """Verify the file exists and is executable, reporting on stderr."""
        if not self.path.exists():
            self._print(f"Error: Specified file '{self.path}' does not exist.", error=True)
            return False
        if self.path.is_dir() or not os.access(self.path, os.X_OK):
            self._print(f"Error: Specified file '{self.path}' is not executable.", error=True)
            return False
        return True

    async def run(self) -> int:
        """Start the executable and block until it exits.

        Returns:
            The child's exit code, or 1 on failure or external shutdown
        """
        if not self.check():
            return ABNORMAL_EXIT_CODE

        try:
            self._handle = await ProcessHandle.launch(
                LaunchSpec(command=(str(self.path.resolve()),)),
                inherit_io=True,
            )
        except LaunchError as e:
            logger.error(f"Direct execute failed: {e}")
            return ABNORMAL_EXIT_CODE

        returncode = await self._handle.wait_for_exit()
        if self._shutdown_requested or returncode is None:
            return ABNORMAL_EXIT_CODE

        self._print("Child process has terminated. Exiting...")
        return normalize_exit_code(returncode)

    def request_shutdown(self) -> None:
        self._shutdown_requested = True
        self.kill_all()

    def kill_all(self) -> None:
        if self._handle is not None:
            self._handle.kill()

    async def shutdown(self) -> None:
        if self._handle is None:
            return
        if self._handle.is_alive():
            self._handle.kill()
            await self._handle.wait_for_exit(DEFAULT_KILL_TIMEOUT)
        self._handle.close()
