"""
Logging configuration module for tenant_sync.

Provides centralized logging configuration with support for:
- Console and file logging
- Configurable log levels via environment variables
- Colored console output when the terminal supports it
- A dedicated matching log recording every entity resolution decision
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from tenant_sync.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "tenant_sync"
MATCHING_LOGGER_NAME = "tenant_sync.matching"

# Simplified format for console
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format, also used for log files
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Matching log keeps millisecond timestamps so decisions can be ordered
MATCHING_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"

# Environment variable names
ENV_LOG_LEVEL = "TENANT_SYNC_LOG_LEVEL"
ENV_DEBUG = "TENANT_SYNC_DEBUG"
ENV_LOG_FILE = "TENANT_SYNC_LOG_FILE"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Log directory chosen by the last setup_logging() call
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    TENANT_SYNC_DEBUG wins over TENANT_SYNC_LOG_LEVEL; unknown level names
    fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVELS.get(level_str, logging.INFO)


def default_log_dir() -> Path:
    """Logs live under the configuration directory by default."""
    return resolve_config_dir() / "logs"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from the environment or the log directory.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    directory = log_dir or default_log_dir()
    return directory / f"tenant_sync_{datetime.now().strftime('%Y%m%d')}.log"


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the tenant_sync application.

    Sets up a console handler and, unless disabled, a daily file handler
    that always captures DEBUG output.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, log at DEBUG with the verbose console format.
        log_dir: Directory for log files. Defaults to <config dir>/logs.
        enable_file_logging: If False, only log to the console.
        use_colors: If True, color console output when supported.

    Returns:
        The root logger for tenant_sync

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("/var/log/tenant-sync"))
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if enable_file_logging else level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    _configured_log_dir = log_dir

    if enable_file_logging:
        file_path = get_log_file_path(log_dir)
        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the tenant_sync hierarchy.

    Args:
        name: Name of the module (typically __name__)
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def get_matching_log_path(log_dir: Optional[Path] = None) -> Path:
    """Timestamped matching log path, one file per session."""
    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return logs_dir / f"matching_{timestamp}.log"


def setup_matching_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up a dedicated logger for tenant matching decisions.

    The matcher writes one line per cascade step it takes, so this file
    explains why a record was linked to an existing tenant or created as
    a new one.

    Args:
        log_file: Optional custom path for the log file.
        level: Logging level (default: DEBUG)

    Returns:
        Logger instance for matching operations
    """
    logger = logging.getLogger(MATCHING_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    file_path = log_file if log_file else get_matching_log_path()

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(file_handler)

        logger.info("=" * 80)
        logger.info(f"Matching log session started at {datetime.now().isoformat()}")
        logger.info("=" * 80)
    except OSError as e:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(console_handler)
        logger.warning(f"Could not create matching log file {file_path}: {e}")

    return logger


def get_matching_logger() -> logging.Logger:
    """
    Get the matching logger instance.

    Before setup_matching_logger() runs this logger has no handlers of its
    own and propagates to the tenant_sync logger.
    """
    return logging.getLogger(MATCHING_LOGGER_NAME)


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Remove old tenant_sync_*.log and matching_*.log files.

    Args:
        log_dir: Directory containing log files.
        keep_count: Number of files to keep per log type. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    deleted = 0
    for pattern in ("tenant_sync_*.log", "matching_*.log"):
        files = sorted(
            logs_dir.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True
        )
        for old_log in files[keep_count:]:
            try:
                old_log.unlink()
                deleted += 1
            except OSError:
                continue
    return deleted


__all__ = [
    "setup_logging",
    "get_logger",
    "setup_matching_logger",
    "get_matching_logger",
    "get_matching_log_path",
    "get_log_level_from_env",
    "get_log_file_path",
    "cleanup_old_logs",
    "ColoredFormatter",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "MATCHING_LOG_FORMAT",
]
