"""Line-oriented relays between one readable stream and one sink.

Each pump is an independent asyncio task. Its read loop runs inside an
anyio.CancelScope which serves as the cancellation token: cancel() interrupts
a blocked read at once and the scope absorbs the resulting cancellation.

Lines are relayed as bytes, so any encoding passes through untouched, and
there is no upper bound on line length.
"""

from __future__ import annotations

import asyncio
import logging
from typing import BinaryIO, Callable, Protocol

import anyio

from ..errors import StreamClosedUnexpectedly

__all__ = [
    "FileSink",
    "LineSink",
    "StreamPump",
    "WriterSink",
    "read_line",
]

logger = logging.getLogger(__name__)

LINE_TERMINATOR = b"\n"

# Closing a pipe from either end surfaces as one of these
# (OSError covers BrokenPipeError/ConnectionResetError; ValueError is a closed file object)
_CLOSED_ERRORS = (OSError, ValueError)


class LineSink(Protocol):
    """Destination for relayed lines."""

    async def write_line(self, line: bytes) -> None: ...

    async def close(self) -> None: ...


class FileSink:
    """Writes lines to a blocking binary file such as ``sys.stdout.buffer``.

    write + flush happen with no await in between, so lines from several pumps
    sharing one FileSink can never be spliced together.
    """

    def __init__(self, file: BinaryIO) -> None:
        self._file = file

    async def write_line(self, line: bytes) -> None:
        self._file.write(line + LINE_TERMINATOR)
        self._file.flush()

    async def close(self) -> None:
        # The console streams belong to the supervisor, not to any pump
        pass


class WriterSink:
    """Writes lines to an asyncio StreamWriter (a child's stdin)."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    async def write_line(self, line: bytes) -> None:
        self._writer.write(line + LINE_TERMINATOR)
        await self._writer.drain()

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except _CLOSED_ERRORS:
            pass


async def read_line(source: asyncio.StreamReader) -> bytes | None:
    """Read one line of any length.

    Returns:
        The line without its terminator (a trailing ``\\r`` is also removed),
        or None at end-of-stream. An unterminated final fragment is returned
        as a line.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await source.readuntil(LINE_TERMINATOR)
        except asyncio.IncompleteReadError as e:
            # EOF: whatever is left is the last line
            if e.partial:
                chunks.append(e.partial)
            if not chunks:
                return None
            return b"".join(chunks)
        except asyncio.LimitOverrunError as e:
            # Longer than the reader's buffer limit: take what is there and keep going
            chunks.append(await source.readexactly(e.consumed))
            continue

        chunks.append(chunk)
        line = b"".join(chunks)[: -len(LINE_TERMINATOR)]
        if line.endswith(b"\r"):
            line = line[:-1]
        return line


class StreamPump:
    """Copies lines from one source to one sink until EOF or cancellation.

    A pump borrows both streams; it is never restarted once finished.

    Example:
        pump = StreamPump(proc.stdout, FileSink(sys.stdout.buffer), label="Background: ")
        pump.start()
        ...
        await pump.stop()

    Attributes:
        name: Task name, used in log records
        label: Prefix written before every line (may be empty)
    """

    def __init__(
        self,
        source: asyncio.StreamReader,
        sink: LineSink,
        *,
        label: str = "",
        name: str = "pump",
        close_sink_on_eof: bool = False,
        source_alive: Callable[[], bool] | None = None,
        pid: int | None = None,
    ) -> None:
        """Create a pump; nothing runs until start().

        Args:
            source: Stream to read lines from
            sink: Where lines are written
            label: Prefix for every line
            name: Task name
            close_sink_on_eof: Close the sink when the source ends
            source_alive: Liveness probe of the producing process, used to tell
                an expected pipe closure from an unexpected one
            pid: Process id of the producing process, for log records
        """
        self.source = source
        self.sink = sink
        self.label = label
        self.name = name
        self._prefix = label.encode("utf-8")
        self._close_sink_on_eof = close_sink_on_eof
        self._source_alive = source_alive
        self.pid = pid
        self._cancel_scope = anyio.CancelScope()
        self._task: asyncio.Task[None] | None = None
        self.lines_relayed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_scope.cancel_called

    def start(self) -> "StreamPump":
        """Schedule the read loop as its own task. Must run inside an event loop."""
        if self._task is not None:
            raise RuntimeError(f"Pump {self.name} already started")
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        """Request cancellation without waiting for the loop to observe it."""
        self._cancel_scope.cancel()

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop to finish on its own.

        Returns:
            True if the loop has finished
        """
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    async def stop(self) -> None:
        """Cancel the loop and wait until it has released everything."""
        self.cancel()
        if self._task is None:
            return
        # wait() instead of await: stop() itself must not be cancelled by the pump's cancellation
        await asyncio.wait({self._task})
        if not self._task.cancelled() and self._task.exception() is not None:
            logger.warning(f"Pump {self.name} failed: {self._task.exception()!r}")

    async def _run(self) -> None:
        with self._cancel_scope:
            try:
                await self._pump()
            except _CLOSED_ERRORS as e:
                self._report_closed(e)
            finally:
                if self._close_sink_on_eof:
                    with anyio.CancelScope(shield=True):
                        await self.sink.close()

        if self._cancel_scope.cancelled_caught:
            logger.debug(f"Pump {self.name} cancelled after {self.lines_relayed} line(s)")

    async def _pump(self) -> None:
        while not self._cancel_scope.cancel_called:
            line = await read_line(self.source)
            if line is None:
                logger.debug(f"Pump {self.name} reached end-of-stream after {self.lines_relayed} line(s)")
                return
            await self.sink.write_line(self._prefix + line if self._prefix else line)
            self.lines_relayed += 1

    def _report_closed(self, error: BaseException) -> None:
        if self._cancel_scope.cancel_called:
            return
        if self._source_alive is not None and self._source_alive():
            logger.warning(f"{StreamClosedUnexpectedly(self.name, self.pid)}: {error}")
        else:
            logger.debug(f"Pump {self.name} ended on closed stream: {error}")
