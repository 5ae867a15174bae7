"""dual-executor configuration.

Launch settings come from a properties file (``./config.properties`` by
default). On first run the bundled template is copied there. If the file
cannot be read every key falls back to its default.

Properties keys:
    backgroundCommand: Command line of the background helper
    foregroundCommand: Command line of the foreground task
    backgroundWorkDir: Working directory of the background helper (default ".")
    foregroundWorkDir: Working directory of the foreground task (default ".")
    directExecuteFile: Executable to run alone instead of the pair
        - disabled = dual mode (default)

Command strings are split on single spaces. Quoting and escaping are not
supported, so arguments containing spaces cannot be expressed.

Environment variables:
    DEX_CONFIG_FILE: Path of the properties file (default ./config.properties)

    DEX_STOP_TIMEOUT: Seconds to wait for each process to stop
        - default 5.0, clamped to 0.1-300

    DEX_LOG_LEVEL: Log level of the dual_executor namespace
        - default WARNING

    DEX_LOG_DEBUG: Debug log mode
        - true/1/yes = on (DEBUG log to a temp file instead of stderr)
        - false/0/no = off (default)
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime
from importlib import resources
from pathlib import Path

from .runtime.process_handle import DEFAULT_STOP_TIMEOUT, LaunchSpec

__all__ = [
    "Config",
    "DIRECT_EXECUTE_DISABLED",
    "get_config",
    "load_config",
    "parse_properties",
    "release_default_config",
    "reload_config",
]

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.properties"
DIRECT_EXECUTE_DISABLED = "disabled"
UNDEFINED_COMMAND = "config_undefined"

# Used verbatim when the properties file cannot be read
FALLBACK_PROPERTIES = {
    "backgroundCommand": UNDEFINED_COMMAND,
    "foregroundCommand": UNDEFINED_COMMAND,
    "backgroundWorkDir": ".",
    "foregroundWorkDir": ".",
    "directExecuteFile": DIRECT_EXECUTE_DISABLED,
}


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_stop_timeout(value: str | None) -> float:
    """Parse the stop timeout environment variable."""
    if not value:
        return DEFAULT_STOP_TIMEOUT
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 300.0))
    except ValueError:
        return DEFAULT_STOP_TIMEOUT


def _parse_log_level(value: str | None) -> int:
    """Parse a level name such as ``info`` or ``DEBUG``."""
    if not value:
        return logging.WARNING
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.WARNING


def parse_properties(text: str) -> dict[str, str]:
    """Parse the subset of the Java properties format used by config files.

    Supported: ``#``/``!`` comment lines, ``key=value``, ``key: value`` and
    ``key value`` separators, and a trailing backslash continuing the value on
    the next line. Later keys override earlier ones.

    Args:
        text: File content

    Returns:
        Key/value mapping
    """
    properties: dict[str, str] = {}
    logical = ""

    for raw_line in text.splitlines():
        line = raw_line.lstrip() if not logical else raw_line.strip()
        if not logical and (not line or line[0] in "#!"):
            continue

        # An odd number of trailing backslashes continues the line
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            logical += line[:-1]
            continue
        logical += line

        key, value = _split_property(logical)
        properties[key] = value
        logical = ""

    if logical:
        key, value = _split_property(logical)
        properties[key] = value

    return properties


def _split_property(line: str) -> tuple[str, str]:
    for index, char in enumerate(line):
        if char in "=:":
            return line[:index].strip(), line[index + 1:].strip()
        if char.isspace():
            rest = line[index:].lstrip()
            if rest[:1] in ("=", ":"):
                rest = rest[1:]
            return line[:index], rest.strip()
    return line.strip(), ""


@dataclass
class Config:
    """dual-executor configuration.

    Attributes:
        background: Launch spec of the background helper
        foreground: Launch spec of the foreground task
        direct_execute_file: Executable for direct mode, or None in dual mode
        stop_timeout: Seconds to wait for each process to stop
        log_level: Level of the dual_executor logger namespace
        log_debug: Debug log mode (DEBUG to a temp file)
        log_file: Log file path (set when log_debug=True)
        config_file: Properties file the settings were read from
        config_loaded: False when the file was unreadable and defaults apply
    """

    background: LaunchSpec
    foreground: LaunchSpec
    direct_execute_file: str | None = None
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    log_level: int = logging.WARNING
    log_debug: bool = False
    log_file: str | None = None
    config_file: Path = Path(DEFAULT_CONFIG_FILE)
    config_loaded: bool = True

    @property
    def direct_mode(self) -> bool:
        return self.direct_execute_file is not None

    def __repr__(self) -> str:
        return (
            f"Config(background={' '.join(self.background.command)!r} "
            f"in {str(self.background.working_directory)!r}, "
            f"foreground={' '.join(self.foreground.command)!r} "
            f"in {str(self.foreground.working_directory)!r}, "
            f"direct_execute_file={self.direct_execute_file}, "
            f"stop_timeout={self.stop_timeout}, "
            f"log_level={logging.getLevelName(self.log_level)}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"config_file={self.config_file}, "
            f"config_loaded={self.config_loaded})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "dual-executor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"dex_debug_{timestamp}.log"

    return str(log_file.resolve())


def release_default_config(path: Path) -> bool:
    """Copy the bundled template to ``path`` unless a file is already there.

    Returns:
        True if a new file was written
    """
    if path.exists():
        return False

    template = resources.files("dual_executor").joinpath("resources").joinpath(DEFAULT_CONFIG_FILE)
    try:
        with template.open("rb") as src, open(path, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except OSError as e:
        logger.warning(f"Could not write default config to {path}: {e}")
        return False

    logger.info(f"Wrote default config to {path}")
    return True


def _read_properties(path: Path) -> dict[str, str] | None:
    try:
        return parse_properties(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read config {path}, using defaults: {e}")
        return None


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from the properties file and the environment.

    Args:
        path: Properties file (default: DEX_CONFIG_FILE or ./config.properties)
    """
    config_file = Path(path or os.environ.get("DEX_CONFIG_FILE") or DEFAULT_CONFIG_FILE)
    release_default_config(config_file)

    properties = _read_properties(config_file)
    loaded = properties is not None
    if properties is None:
        properties = dict(FALLBACK_PROPERTIES)

    def get(key: str) -> str:
        # Blank values count as missing
        return properties.get(key) or FALLBACK_PROPERTIES[key]

    direct = get("directExecuteFile")

    log_debug = _parse_bool(os.environ.get("DEX_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        background=LaunchSpec.from_command_line(get("backgroundCommand"), get("backgroundWorkDir")),
        foreground=LaunchSpec.from_command_line(get("foregroundCommand"), get("foregroundWorkDir")),
        direct_execute_file=None if direct == DIRECT_EXECUTE_DISABLED else direct,
        stop_timeout=_parse_stop_timeout(os.environ.get("DEX_STOP_TIMEOUT")),
        log_level=_parse_log_level(os.environ.get("DEX_LOG_LEVEL")),
        log_debug=log_debug,
        log_file=log_file,
        config_file=config_file,
        config_loaded=loaded,
    )


# Module-level instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the cached configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration (for tests)."""
    global _config
    _config = load_config()
    return _config
