"""Dual-process supervisor.

Owns the background and foreground ProcessHandles and the five pumps that
connect them to the console:

- background stdout  -> console stdout  ("Background: ")
- background stderr  -> console stderr  ("Background Error: ")
- console stdin      -> foreground stdin
- foreground stdout  -> console stdout  (unlabelled)
- foreground stderr  -> console stderr  ("Foreground Error: ")

Every exit path (natural foreground exit, external signal, launch failure)
funnels into shutdown(). The first call creates the shutdown task and every
call awaits that same task, so the stop sequence runs exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from enum import Enum
from typing import Awaitable, BinaryIO, Callable, Optional

from .runtime.console import open_console_reader
from .runtime.process_handle import (
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_STOP_TIMEOUT,
    LaunchSpec,
    ProcessHandle,
    normalize_exit_code,
)
from .runtime.stream_pump import FileSink, StreamPump, WriterSink

__all__ = ["Supervisor", "SupervisorState", "ABNORMAL_EXIT_CODE"]

logger = logging.getLogger(__name__)

BACKGROUND_LABEL = "Background: "
BACKGROUND_ERROR_LABEL = "Background Error: "
FOREGROUND_ERROR_LABEL = "Foreground Error: "

# Exit code for launch failures and signal-triggered shutdowns
ABNORMAL_EXIT_CODE = 1

Launcher = Callable[[LaunchSpec], Awaitable[ProcessHandle]]


class SupervisorState(Enum):
    """Supervisor lifecycle. Transitions only move forward."""

    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class Supervisor:
    """Runs a background helper and a foreground task side by side.

    Example:
        ```python
        supervisor = Supervisor()
        await supervisor.launch(background_spec, foreground_spec)
        try:
            exit_code = await supervisor.run()
        finally:
            await supervisor.shutdown()
        ```

    Attributes:
        stop_timeout: Bounded wait for every stop attempt before escalating
        kill_timeout: Bounded wait after a forceful kill
    """

    def __init__(
        self,
        *,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        console_input: Optional[asyncio.StreamReader] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
        launcher: Optional[Launcher] = None,
    ) -> None:
        """Create an idle supervisor.

        Args:
            stop_timeout: Seconds to wait for each process to stop
            kill_timeout: Seconds to wait after a forceful kill
            console_input: Source relayed to the foreground (default: our stdin)
            stdout: Combined output sink (default: our stdout)
            stderr: Combined error sink (default: our stderr)
            launcher: Process factory, replaceable for tests
        """
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self._console_input = console_input
        self._stdout = stdout
        self._stderr = stderr
        self._launcher: Launcher = launcher or ProcessHandle.launch

        self._state = SupervisorState.IDLE
        self._background: Optional[ProcessHandle] = None
        self._foreground: Optional[ProcessHandle] = None
        self._console_pump: Optional[StreamPump] = None
        self._background_pumps: list[StreamPump] = []
        self._foreground_pumps: list[StreamPump] = []
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        # Cleared while a launch step is in flight
        self._launch_settled = asyncio.Event()
        self._launch_settled.set()

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def background(self) -> Optional[ProcessHandle]:
        return self._background

    @property
    def foreground(self) -> Optional[ProcessHandle]:
        return self._foreground

    @property
    def pumps(self) -> list[StreamPump]:
        pumps = list(self._background_pumps)
        if self._console_pump is not None:
            pumps.append(self._console_pump)
        pumps.extend(self._foreground_pumps)
        return pumps

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_task is not None

    async def launch(self, background: LaunchSpec, foreground: LaunchSpec) -> None:
        """Start background then foreground and wire up the pumps.

        The background goes first so it is up before the foreground starts
        producing work for it. There is no readiness handshake beyond the
        process having started.

        A shutdown requested while launching (a signal) waits for the launch
        step in progress, then stops whatever was started. launch() then
        returns without attaching pumps and run() reports the abnormal exit.

        Raises:
            LaunchError: If either process cannot be started. Anything already
                running has been shut down by then. Any other exception,
                cancellation included, also shuts down before propagating.
        """
        if self._state is not SupervisorState.IDLE:
            raise RuntimeError(f"Cannot launch from state {self._state.value}")

        self._launch_settled.clear()
        try:
            self._background = await self._launcher(background)
            logger.info(f"Background process started pid={self._background.pid}")
            if self._shutdown_task is None:
                self._foreground = await self._launcher(foreground)
                logger.info(f"Foreground process started pid={self._foreground.pid}")
        except BaseException as e:
            self._launch_settled.set()
            logger.debug(f"Launch failed, shutting down: {e!r}")
            await self.shutdown()
            raise
        self._launch_settled.set()

        if self._shutdown_task is not None:
            logger.info("Shutdown requested during launch")
            await self.shutdown()
            return

        self._start_pumps(self._background, self._foreground)
        self._state = SupervisorState.RUNNING

    def _start_pumps(self, background: ProcessHandle, foreground: ProcessHandle) -> None:
        out = FileSink(self._stdout if self._stdout is not None else sys.stdout.buffer)
        err = FileSink(self._stderr if self._stderr is not None else sys.stderr.buffer)
        console = self._console_input if self._console_input is not None else open_console_reader()

        self._background_pumps = [
            StreamPump(
                background.stdout,
                out,
                label=BACKGROUND_LABEL,
                name="background-stdout",
                source_alive=background.is_alive,
                pid=background.pid,
            ),
            StreamPump(
                background.stderr,
                err,
                label=BACKGROUND_ERROR_LABEL,
                name="background-stderr",
                source_alive=background.is_alive,
                pid=background.pid,
            ),
        ]
        self._console_pump = StreamPump(
            console,
            WriterSink(foreground.stdin),
            name="console-stdin",
            close_sink_on_eof=True,
        )
        self._foreground_pumps = [
            StreamPump(
                foreground.stdout,
                out,
                name="foreground-stdout",
                source_alive=foreground.is_alive,
                pid=foreground.pid,
            ),
            StreamPump(
                foreground.stderr,
                err,
                label=FOREGROUND_ERROR_LABEL,
                name="foreground-stderr",
                source_alive=foreground.is_alive,
                pid=foreground.pid,
            ),
        ]
        for pump in self.pumps:
            pump.start()

    async def run(self) -> int:
        """Block until the foreground exits, then shut everything down.

        Returns:
            The foreground's exit code, or 1 if a shutdown was already under
            way (signal) before the foreground exited on its own
        """
        if self._foreground is None:
            if self._shutdown_task is not None:
                # Interrupted during launch
                await self.shutdown()
                return ABNORMAL_EXIT_CODE
            raise RuntimeError("run() called before a successful launch()")

        returncode = await self._foreground.wait_for_exit()
        natural_exit = self._shutdown_task is None

        if natural_exit:
            logger.info(f"Foreground process exited with code {returncode}")
            await self._drain_foreground_output()

        await self.shutdown()

        if not natural_exit or returncode is None:
            return ABNORMAL_EXIT_CODE
        return normalize_exit_code(returncode)

    async def _drain_foreground_output(self) -> None:
        """Let the foreground output pumps reach end-of-stream, bounded."""
        if not self._foreground_pumps:
            return
        results = await asyncio.gather(
            *(pump.join(self.stop_timeout) for pump in self._foreground_pumps)
        )
        if not all(results):
            # A grandchild still holds the pipe open
            logger.debug("Foreground output still open after exit, not waiting further")

    def kill_all(self) -> None:
        """Kill both processes now; a running shutdown sequence then finishes fast."""
        for handle in (self._foreground, self._background):
            if handle is not None:
                handle.kill()

    def request_shutdown(self) -> None:
        """Schedule shutdown from synchronous code such as a signal handler."""
        self._ensure_shutdown_task()

    async def shutdown(self) -> None:
        """Run the stop sequence exactly once; later calls wait for the first.

        The sequence is shielded, so cancelling a caller does not abort it.
        """
        await asyncio.shield(self._ensure_shutdown_task())

    def _ensure_shutdown_task(self) -> asyncio.Task[None]:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self._shutdown_sequence(), name="supervisor-shutdown"
            )
        return self._shutdown_task

    async def _shutdown_sequence(self) -> None:
        # A process being spawned right now must be known before it can be stopped
        await self._launch_settled.wait()
        logger.info(f"Shutting down (from state {self._state.value})")
        self._state = SupervisorState.SHUTTING_DOWN

        try:
            # 1. Stop relaying console input and background output
            if self._console_pump is not None:
                self._console_pump.cancel()
            for pump in self._background_pumps:
                pump.cancel()

            # 2. Foreground gets no cooperative protocol, only a kill
            if self._foreground is not None:
                await self._stop_foreground(self._foreground)

            # 3. Background: stop line, bounded wait, then kill
            if self._background is not None:
                await self._stop_background(self._background)

            # 4. Release every pump
            await asyncio.gather(*(pump.stop() for pump in self.pumps))
        finally:
            for handle in (self._foreground, self._background):
                if handle is not None:
                    handle.close()
            self._state = SupervisorState.TERMINATED
            logger.info("Shutdown complete")

    async def _stop_foreground(self, handle: ProcessHandle) -> None:
        if not handle.is_alive():
            logger.debug(f"Foreground already exited pid={handle.pid}")
            return

        try:
            handle.kill()
            if await handle.wait_for_exit(self.stop_timeout) is None:
                logger.warning(f"Foreground did not exit after kill pid={handle.pid}")
        except Exception as e:
            logger.warning(f"Error stopping foreground pid={handle.pid}: {e}")

    async def _stop_background(self, handle: ProcessHandle) -> None:
        if not handle.is_alive():
            logger.debug(f"Background already exited pid={handle.pid}")
            return

        try:
            if await handle.request_graceful_stop(self.stop_timeout):
                logger.info(f"Background stopped gracefully pid={handle.pid}")
                return

            logger.info(
                f"Background did not stop within {self.stop_timeout}s, "
                f"killing pid={handle.pid}"
            )
            handle.kill()
            if await handle.wait_for_exit(self.kill_timeout) is None:
                logger.warning(f"Background did not exit after kill pid={handle.pid}")
        except Exception as e:
            logger.warning(f"Error stopping background pid={handle.pid}: {e}")
            handle.kill()
