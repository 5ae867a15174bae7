"""StreamPump unit tests.

Test coverage:
- read_line: terminators, final fragment, unbounded line length
- Relaying with and without a label, order preservation
- Cooperative cancellation (prompt, idempotent, before first read)
- Closed sinks and sources end the pump without raising
- Two pumps sharing one sink never splice lines
"""

from __future__ import annotations

import asyncio
import io
import logging
import re

import pytest

from conftest import FakeWriter
from dual_executor.runtime.stream_pump import FileSink, StreamPump, WriterSink, read_line


def reader_with(data: bytes, *, limit: int = 2 ** 16, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class RaisingSource:
    """Source whose pipe breaks on the first read."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    async def readuntil(self, separator: bytes = b"\n") -> bytes:
        raise self.error

    async def readexactly(self, n: int) -> bytes:
        raise self.error


# =============================================================================
# read_line Tests
# =============================================================================


class TestReadLine:
    """Test line framing."""

    @pytest.mark.asyncio
    async def test_lines_without_terminator(self):
        reader = reader_with(b"one\ntwo\n")
        assert await read_line(reader) == b"one"
        assert await read_line(reader) == b"two"
        assert await read_line(reader) is None

    @pytest.mark.asyncio
    async def test_crlf_stripped(self):
        reader = reader_with(b"windows\r\n")
        assert await read_line(reader) == b"windows"

    @pytest.mark.asyncio
    async def test_final_fragment_is_a_line(self):
        reader = reader_with(b"first\nno newline")
        assert await read_line(reader) == b"first"
        assert await read_line(reader) == b"no newline"
        assert await read_line(reader) is None

    @pytest.mark.asyncio
    async def test_empty_line_is_not_eof(self):
        reader = reader_with(b"\nafter\n")
        assert await read_line(reader) == b""
        assert await read_line(reader) == b"after"

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        assert await read_line(reader_with(b"")) is None

    @pytest.mark.asyncio
    async def test_line_far_beyond_reader_limit(self):
        """A 1MB line must come through whole even with a 1KB buffer limit."""
        big = b"x" * (1024 * 1024)
        reader = asyncio.StreamReader(limit=1024)

        async def feed():
            for offset in range(0, len(big), 4096):
                reader.feed_data(big[offset:offset + 4096])
                await asyncio.sleep(0)
            reader.feed_data(b"\nnext\n")
            reader.feed_eof()

        feeder = asyncio.create_task(feed())
        line = await read_line(reader)
        await feeder

        assert line == big
        assert await read_line(reader) == b"next"


# =============================================================================
# Relay Tests
# =============================================================================


class TestRelay:
    """Test relaying lines to sinks."""

    @pytest.mark.asyncio
    async def test_label_prefix(self):
        out = io.BytesIO()
        pump = StreamPump(reader_with(b"hello\nworld\n"), FileSink(out), label="Background: ")

        pump.start()
        assert await pump.join(5)

        assert out.getvalue() == b"Background: hello\nBackground: world\n"
        assert pump.lines_relayed == 2

    @pytest.mark.asyncio
    async def test_no_label_is_raw(self):
        out = io.BytesIO()
        pump = StreamPump(reader_with(b"raw \xff bytes\n"), FileSink(out))

        pump.start()
        await pump.join(5)

        assert out.getvalue() == b"raw \xff bytes\n"

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        lines = [f"line {i}".encode() for i in range(1000)]
        out = io.BytesIO()
        pump = StreamPump(reader_with(b"\n".join(lines) + b"\n"), FileSink(out))

        pump.start()
        await pump.join(5)

        assert out.getvalue().splitlines() == lines

    @pytest.mark.asyncio
    async def test_writer_sink_and_close_on_eof(self):
        writer = FakeWriter()
        pump = StreamPump(
            reader_with(b"a\nb\n"),
            WriterSink(writer),  # type: ignore[arg-type]
            close_sink_on_eof=True,
        )

        pump.start()
        await pump.join(5)

        assert writer.lines == [b"a", b"b"]
        assert writer.closed is True

    @pytest.mark.asyncio
    async def test_sink_left_open_by_default(self):
        writer = FakeWriter()
        pump = StreamPump(reader_with(b"a\n"), WriterSink(writer))  # type: ignore[arg-type]

        pump.start()
        await pump.join(5)

        assert writer.closed is False

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        pump = StreamPump(reader_with(b""), FileSink(io.BytesIO()))
        pump.start()
        with pytest.raises(RuntimeError):
            pump.start()
        await pump.stop()


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_stop_interrupts_blocked_read(self):
        reader = asyncio.StreamReader()  # never fed
        pump = StreamPump(reader, FileSink(io.BytesIO()), name="idle")
        pump.start()
        await asyncio.sleep(0.05)
        assert pump.running

        await asyncio.wait_for(pump.stop(), timeout=1.0)

        assert pump.running is False
        assert pump.cancel_requested is True

    @pytest.mark.asyncio
    async def test_stop_immediately_after_start(self):
        pump = StreamPump(asyncio.StreamReader(), FileSink(io.BytesIO()))
        pump.start()

        await asyncio.wait_for(pump.stop(), timeout=1.0)

        assert pump.running is False

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        pump = StreamPump(reader_with(b"x\n"), FileSink(io.BytesIO()))
        pump.start()
        await pump.join(5)

        await pump.stop()
        await pump.stop()

        assert pump.running is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        pump = StreamPump(asyncio.StreamReader(), FileSink(io.BytesIO()))
        await pump.stop()
        assert pump.running is False

    @pytest.mark.asyncio
    async def test_join_timeout(self):
        pump = StreamPump(asyncio.StreamReader(), FileSink(io.BytesIO()))
        pump.start()

        assert await pump.join(0.1) is False

        await pump.stop()
        assert await pump.join(0.1) is True

    @pytest.mark.asyncio
    async def test_close_on_eof_still_runs_when_cancelled(self):
        writer = FakeWriter()
        pump = StreamPump(
            asyncio.StreamReader(),
            WriterSink(writer),  # type: ignore[arg-type]
            close_sink_on_eof=True,
        )
        pump.start()
        await asyncio.sleep(0.01)

        await pump.stop()

        assert writer.closed is True

    @pytest.mark.asyncio
    async def test_cancellation_not_logged_as_error(self, caplog):
        caplog.set_level(logging.DEBUG, logger="dual_executor")
        pump = StreamPump(asyncio.StreamReader(), FileSink(io.BytesIO()), source_alive=lambda: True)
        pump.start()
        await asyncio.sleep(0.01)

        await pump.stop()

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


# =============================================================================
# Closed Stream Tests
# =============================================================================


class TestClosedStreams:
    """Ordinary closure ends a pump without raising."""

    @pytest.mark.asyncio
    async def test_broken_sink_ends_pump(self):
        writer = FakeWriter()
        writer.close()
        pump = StreamPump(reader_with(b"a\nb\n", eof=False), WriterSink(writer))  # type: ignore[arg-type]

        pump.start()

        assert await pump.join(1.0) is True
        assert pump.lines_relayed == 0

    @pytest.mark.asyncio
    async def test_closed_file_sink_ends_pump(self):
        out = io.BytesIO()
        out.close()
        pump = StreamPump(reader_with(b"a\n", eof=False), FileSink(out))

        pump.start()

        assert await pump.join(1.0) is True

    @pytest.mark.asyncio
    async def test_unexpected_close_logged_as_warning(self, caplog):
        caplog.set_level(logging.DEBUG, logger="dual_executor")
        pump = StreamPump(
            RaisingSource(ConnectionResetError("pipe gone")),  # type: ignore[arg-type]
            FileSink(io.BytesIO()),
            name="background-stdout",
            source_alive=lambda: True,
            pid=4242,
        )

        pump.start()
        await pump.join(1.0)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "closed unexpectedly" in warnings[0].getMessage()
        assert "pid=4242" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_close_after_exit_is_quiet(self, caplog):
        caplog.set_level(logging.DEBUG, logger="dual_executor")
        pump = StreamPump(
            RaisingSource(ConnectionResetError("pipe gone")),  # type: ignore[arg-type]
            FileSink(io.BytesIO()),
            source_alive=lambda: False,
        )

        pump.start()
        await pump.join(1.0)

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


# =============================================================================
# Line Integrity Tests
# =============================================================================


class TestLineIntegrity:
    """Two pumps into one sink never splice lines."""

    @pytest.mark.asyncio
    async def test_interleaved_sources_shared_sink(self):
        out = io.BytesIO()
        sink = FileSink(out)
        source_a = asyncio.StreamReader(limit=1024)
        source_b = asyncio.StreamReader(limit=1024)
        pumps = [
            StreamPump(source_a, sink, label="A> ", name="a").start(),
            StreamPump(source_b, sink, label="B> ", name="b").start(),
        ]

        def payload(tag: str, index: int) -> bytes:
            size = 1024 * 1024 if index == 0 else 5000 + index
            return f"{tag}:{index}:".encode() + tag.encode() * size + b"\n"

        data_a = b"".join(payload("a", i) for i in range(50))
        data_b = b"".join(payload("b", i) for i in range(50))

        # Feed both sources in small alternating chunks so reads interleave
        chunk = 3000
        for offset in range(0, max(len(data_a), len(data_b)), chunk):
            source_a.feed_data(data_a[offset:offset + chunk])
            source_b.feed_data(data_b[offset:offset + chunk])
            await asyncio.sleep(0)
        source_a.feed_eof()
        source_b.feed_eof()

        for pump in pumps:
            assert await pump.join(10)

        lines = out.getvalue().splitlines()
        assert len(lines) == 100

        pattern = re.compile(rb"^(A> a:(\d+):a+|B> b:(\d+):b+)$")
        seen = {b"a": [], b"b": []}
        for line in lines:
            assert pattern.match(line), line[:80]
            tag = line[3:4]
            index = int(line.split(b":")[1])
            assert len(line) == len(b"A> ") + len(payload(tag.decode(), index)) - 1
            seen[tag].append(index)

        assert seen[b"a"] == list(range(50))
        assert seen[b"b"] == list(range(50))
