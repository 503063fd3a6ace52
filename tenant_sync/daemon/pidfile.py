"""
PID file management for the foreground sync daemon.

Single-flight only protects runs inside one process; the PID file keeps a
second daemon process from scheduling syncs against the same registry.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE_NAME = "daemon.pid"


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when another daemon process already owns the PID file."""

    pass


class PIDFileManager:
    """
    Create, read and remove the daemon PID file.

    Usage:
        with PIDFileManager(config_dir / "daemon.pid"):
            scheduler.run()
    """

    def __init__(self, pid_file: Path):
        self.pid_file = pid_file

    def __enter__(self) -> PIDFileManager:
        self.create()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.remove()

    def create(self) -> None:
        """
        Write the current process id, replacing a stale file.

        Raises:
            DaemonAlreadyRunningError: If the recorded process is alive
            PIDFileError: If the file cannot be written
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if _is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(os.getpid()))
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e
        logger.debug(f"Created PID file: {self.pid_file}")

    def read(self) -> int | None:
        """
        Raises:
            PIDFileError: If the file exists but does not hold a PID
        """
        if not self.pid_file.exists():
            return None
        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e
        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        if not self.pid_file.exists():
            return
        try:
            self.pid_file.unlink()
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e


def _is_process_running(pid: int) -> bool:
    try:
        # Signal 0 checks existence without delivering anything
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
