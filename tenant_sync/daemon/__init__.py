"""
tenant_sync.daemon - Scheduler module

Scheduled incremental and full syncs, run statistics and health checks.
"""

import re


def parse_interval(interval: str | int) -> int:
    """Parse an interval string into seconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30 seconds
            - "30m" -> 30 minutes (1800 seconds)
            - "24h" -> 24 hours (86400 seconds)
            - "1d" -> 1 day (86400 seconds)
            - 3600 -> 3600 seconds (pass-through)

    Returns:
        Interval in seconds as an integer.

    Raises:
        ValueError: If the interval is not positive, malformed or uses an
            unknown unit.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        seconds = interval
    elif isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = re.match(r"^(\d+)\s*([smhd])$", text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '5m', '1h', or '1d'."
                )
            multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
            seconds = int(match.group(1)) * multipliers[match.group(2)]
    else:
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got '{interval}'")
    return seconds


# Imports after parse_interval to avoid circular dependencies
from tenant_sync.daemon.pidfile import (  # noqa: E402
    DaemonAlreadyRunningError,
    DaemonError,
    PIDFileError,
    PIDFileManager,
)
from tenant_sync.daemon.scheduler import SchedulerStats, SyncScheduler  # noqa: E402

__all__ = [
    "parse_interval",
    "SyncScheduler",
    "SchedulerStats",
    "DaemonError",
    "DaemonAlreadyRunningError",
    "PIDFileError",
    "PIDFileManager",
]
