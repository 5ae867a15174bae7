"""dual-executor application entry point.

Holds the run lifecycle and the main() entry point.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from .config import Config, get_config
from .direct import DirectExecutor
from .errors import LaunchError
from .signal_manager import FORCE_EXIT_CODE, SignalManager
from .supervisor import ABNORMAL_EXIT_CODE, Supervisor

__all__ = ["run_dual", "run_direct", "main"]

logger = logging.getLogger(__name__)


async def run_dual(config: Config) -> int:
    """Run the background/foreground pair until the foreground exits.

    Returns:
        Exit code for the supervisor process
    """
    logger.info(f"Starting dual-executor: {config}")

    supervisor = Supervisor(stop_timeout=config.stop_timeout)
    signal_manager = SignalManager(
        on_shutdown=supervisor.request_shutdown,
        on_force_exit=supervisor.kill_all,
    )

    try:
        # Installed first so a signal during launch still goes through shutdown()
        await signal_manager.start()
        try:
            await supervisor.launch(config.background, config.foreground)
        except LaunchError as e:
            logger.error(f"Launch failed: {e}")
            return ABNORMAL_EXIT_CODE

        exit_code = await supervisor.run()

    except asyncio.CancelledError:
        logger.info("run_dual: cancelled")
        raise

    except BaseException as e:
        logger.error(
            f"run_dual: BaseException caught: type={type(e).__name__}, "
            f"msg={e}"
        )
        raise

    finally:
        # No-op when run() already completed it
        await supervisor.shutdown()
        await signal_manager.stop()

    if signal_manager.is_force_exit:
        logger.warning(f"Force exit requested, terminating with exit code {FORCE_EXIT_CODE}")
        return FORCE_EXIT_CODE

    logger.info(f"dual-executor finished with exit code {exit_code}")
    return exit_code


async def run_direct(config: Config) -> int:
    """Run the single configured executable with the inherited console."""
    logger.info(f"Starting direct execute: {config.direct_execute_file}")

    executor = DirectExecutor(config.direct_execute_file)
    signal_manager = SignalManager(on_shutdown=executor.request_shutdown)

    try:
        await signal_manager.start()
        return await executor.run()
    finally:
        await executor.shutdown()
        await signal_manager.stop()


def configure_logging(config: Config) -> None:
    """Set up log handlers for the dual_executor namespace."""
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # Keep diagnostics out of the relayed console output
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = config.log_level

    # Root logger (third-party libraries) at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("dual_executor").setLevel(log_level)


def main() -> None:
    """Main entry point."""
    try:
        config = get_config()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(ABNORMAL_EXIT_CODE)

    configure_logging(config)

    try:
        if config.direct_mode:
            exit_code = asyncio.run(run_direct(config))
        else:
            exit_code = asyncio.run(run_dual(config))
    except KeyboardInterrupt:
        # Ctrl+C before the signal handlers were installed
        exit_code = ABNORMAL_EXIT_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
