"""Runtime module for child process ownership and stream relaying.

This module provides isolated process launch, reliable two-phase termination
and line-oriented stream pumps for the supervisor.
"""

from __future__ import annotations

from .console import open_console_reader
from .process_handle import LaunchSpec, ProcessHandle, normalize_exit_code
from .stream_pump import FileSink, StreamPump, WriterSink

__all__ = [
    "FileSink",
    "LaunchSpec",
    "ProcessHandle",
    "StreamPump",
    "WriterSink",
    "normalize_exit_code",
    "open_console_reader",
]
