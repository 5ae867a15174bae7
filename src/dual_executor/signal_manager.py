"""Signal handling for the supervisor.

Termination requests addressed to the supervisor itself are turned into the
same idempotent shutdown used for a natural foreground exit:

- SIGINT / SIGTERM / SIGHUP: request shutdown
- SIGINT twice within the double-tap window: also flag a forced exit (130)

Children run in their own sessions, so a terminal Ctrl+C reaches only the
supervisor and the children are stopped through the regular sequence.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

__all__ = ["SignalManager", "FORCE_EXIT_CODE"]

logger = logging.getLogger(__name__)

# 128 + SIGINT(2)
FORCE_EXIT_CODE = 130

DEFAULT_DOUBLE_TAP_WINDOW = 1.0


class SignalManager:
    """Routes OS termination signals to a shutdown callback.

    Example:
        ```python
        signal_manager = SignalManager(on_shutdown=supervisor.request_shutdown)
        await signal_manager.start()
        try:
            code = await supervisor.run()
        finally:
            await signal_manager.stop()
        ```

    Attributes:
        double_tap_window: Seconds within which a second SIGINT forces exit
    """

    def __init__(
        self,
        on_shutdown: Callable[[], None],
        double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW,
        on_force_exit: Optional[Callable[[], None]] = None,
    ) -> None:
        """Create a manager; nothing is installed until start().

        Args:
            on_shutdown: Called once for the first termination signal
            double_tap_window: Seconds within which a second SIGINT forces exit
            on_force_exit: Called when a double SIGINT forces exit
        """
        self.double_tap_window = double_tap_window
        self._on_shutdown = on_shutdown
        self._on_force_exit = on_force_exit

        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._original_handlers: dict[int, object] = {}
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """Whether a double SIGINT asked for an immediate exit."""
        return self._force_exit

    @staticmethod
    def _handled_signals() -> list[signal.Signals]:
        signals = [signal.SIGINT, signal.SIGTERM]
        if hasattr(signal, "SIGHUP"):
            signals.append(signal.SIGHUP)
        return signals

    async def start(self) -> None:
        """Install the handlers. Must be called inside the event loop."""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        if sys.platform != "win32":
            for sig in self._handled_signals():
                self._original_handlers[sig] = signal.getsignal(sig)
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            logger.debug("Signal handlers installed (SIGINT, SIGTERM, SIGHUP)")
        else:
            # Windows: add_signal_handler is unavailable
            self._original_handlers[signal.SIGINT] = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_signal, signal.SIGINT),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """Restore the original handlers."""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            for sig in self._original_handlers:
                try:
                    self._loop.remove_signal_handler(sig)
                except Exception as e:
                    logger.debug(f"Error removing handler for {sig}: {e}")
        elif sys.platform == "win32" and signal.SIGINT in self._original_handlers:
            try:
                signal.signal(signal.SIGINT, self._original_handlers[signal.SIGINT])
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        self._original_handlers.clear()
        logger.debug("Signal handlers removed")

    def _handle_signal(self, sig: int) -> None:
        name = signal.Signals(sig).name
        if sig == signal.SIGINT:
            current_time = time.monotonic()
            time_since_last = current_time - self._last_sigint_time
            self._last_sigint_time = current_time
            if self._shutdown_requested and time_since_last < self.double_tap_window:
                logger.warning("Double SIGINT detected, forcing exit")
                self._force_exit = True
                if self._on_force_exit:
                    try:
                        self._on_force_exit()
                    except Exception as e:
                        logger.warning(f"Error in force-exit callback: {e}")
                return

        if self._shutdown_requested:
            logger.info(f"{name} received, shutdown already in progress")
            return

        logger.info(f"{name} received, shutting down")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True
        try:
            self._on_shutdown()
        except Exception as e:
            logger.warning(f"Error in shutdown callback: {e}")
