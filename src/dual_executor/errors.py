"""Exception types for dual-executor.

Only LaunchError ever reaches the operator. The other conditions are
recovered inside the runtime and surface as log records.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Sequence

__all__ = [
    "DualExecutorError",
    "LaunchError",
    "LaunchFailureReason",
    "StreamClosedUnexpectedly",
]


class DualExecutorError(Exception):
    """Base exception."""
    pass


class LaunchFailureReason(Enum):
    """Why a child process could not be started."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_WORKING_DIR = "invalid_working_dir"
    OS_ERROR = "os_error"


class LaunchError(DualExecutorError):
    """A child process could not be started.

    Attributes:
        reason: Failure category
        argv: Argument vector that was being launched
        cwd: Working directory requested for the process
    """

    def __init__(
        self,
        reason: LaunchFailureReason,
        argv: Sequence[str],
        cwd: Path,
        detail: str = "",
    ) -> None:
        self.reason = reason
        self.argv = list(argv)
        self.cwd = cwd
        self.detail = detail
        message = f"cannot launch {self.argv[0] if self.argv else '<empty>'!r} in {str(cwd)!r}: {reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StreamClosedUnexpectedly(DualExecutorError):
    """An output pipe closed while its process was still alive.

    Never propagated out of a pump; used to format the warning.
    """

    def __init__(self, label: str, pid: int | None = None) -> None:
        self.label = label
        self.pid = pid
        super().__init__(f"{label} stream closed unexpectedly (pid={pid})")
