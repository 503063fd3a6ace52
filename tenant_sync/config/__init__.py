"""
tenant_sync.config - Configuration management module

Contains configuration loading, validation, and resolved runtime settings.
"""

from tenant_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
)
from tenant_sync.config.settings import Settings

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "Settings",
]
