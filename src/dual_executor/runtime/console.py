"""Async access to the supervisor's own stdin.

stdin is read by a daemon thread that feeds an asyncio.StreamReader. The
event loop never blocks on the terminal, and shutdown never has to wait for a
pending read: the thread is simply abandoned when the process exits.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import BinaryIO

__all__ = ["open_console_reader"]

logger = logging.getLogger(__name__)

# Large enough that typical lines fit in one readuntil()
CONSOLE_READER_LIMIT = 1024 * 1024


def open_console_reader(stream: BinaryIO | None = None) -> asyncio.StreamReader:
    """Start relaying a blocking binary stream into a StreamReader.

    Must be called from inside the running event loop.

    Args:
        stream: Binary stream to read (default: ``sys.stdin.buffer``)

    Returns:
        Reader that receives every line and then EOF
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=CONSOLE_READER_LIMIT)
    if stream is None:
        if sys.stdin is None:
            # No console at all (pythonw, detached service)
            reader.feed_eof()
            return reader
        stream = sys.stdin.buffer

    thread = threading.Thread(
        target=_feed,
        args=(stream, reader, loop),
        name="console-reader",
        daemon=True,
    )
    thread.start()
    return reader


def _feed(stream: BinaryIO, reader: asyncio.StreamReader, loop: asyncio.AbstractEventLoop) -> None:
    try:
        while True:
            line = stream.readline()
            if not line:
                break
            loop.call_soon_threadsafe(reader.feed_data, line)
    except (OSError, ValueError) as e:
        logger.debug(f"Console input ended: {e}")
    except RuntimeError:
        # Loop already closed, nobody is listening any more
        return

    try:
        loop.call_soon_threadsafe(reader.feed_eof)
    except RuntimeError:
        pass
