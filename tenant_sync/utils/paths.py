"""
Path utilities for configuration and data directory resolution.

Provides consistent path resolution for the tenant-sync configuration
directory, the registry database and log files.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".tenant-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "TENANT_SYNC_CONFIG_DIR"

# Registry database file name inside the config directory
DEFAULT_DB_FILE = "registry.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. TENANT_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.tenant-sync)

    Args:
        config_dir: Optional explicit configuration directory path.

    Returns:
        Resolved Path to the configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_db_path(db_path: Path | str | None, config_dir: Path) -> str:
    """
    Resolve the registry database location.

    ":memory:" is passed through unchanged; relative paths are taken
    relative to the configuration directory.
    """
    if db_path is None:
        return str(config_dir / DEFAULT_DB_FILE)
    if str(db_path) == ":memory:":
        return ":memory:"
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return str(path)
