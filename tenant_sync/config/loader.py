"""
Configuration loader module for tenant synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Type and range validation of known keys
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from tenant_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Source options
    "collection_id": str,
    "notion_token_env": str,
    "request_timeout": (int, float),
    "inter_request_delay": (int, float),
    "max_retries": int,
    # Registry options
    "db_path": str,
    # Matching options
    "fuzzy_threshold": (int, float),
    # Scheduler options
    "incremental_interval": (str, int),
    "full_interval": (str, int),
    "incremental_lookback": (str, int),
    "max_staleness": (str, int),
    "active_hours_start": int,
    "active_hours_end": int,
    "scheduler_enabled": bool,
    # Webhook server options
    "webhook_host": str,
    "webhook_port": int,
    # Logging options
    "log_dir": str,
}


class ConfigLoader:
    """
    YAML configuration file loader.

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load_and_validate()
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.tenant-sync/ or $TENANT_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns an empty dict if the file doesn't exist.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration types and value ranges.

        Unknown keys are ignored so newer config files keep working with
        older releases.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected_type = VALID_KEYS.get(key)
            if expected_type is None:
                continue
            # bool is an int subclass; reject it where a number is expected
            if isinstance(value, bool) and expected_type is not bool:
                raise ConfigError(
                    f"Invalid type for '{key}': expected "
                    f"{_type_name(expected_type)}, got bool"
                )
            if not isinstance(value, expected_type):
                raise ConfigError(
                    f"Invalid type for '{key}': expected "
                    f"{_type_name(expected_type)}, got {type(value).__name__}"
                )

        if "fuzzy_threshold" in config:
            threshold = config["fuzzy_threshold"]
            if not (0.0 <= threshold <= 1.0):
                raise ConfigError(
                    f"fuzzy_threshold must be between 0.0 and 1.0, got {threshold}"
                )

        for key in ("max_retries", "webhook_port"):
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in ("request_timeout",):
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "inter_request_delay" in config and config["inter_request_delay"] < 0:
            raise ConfigError(
                f"inter_request_delay must be >= 0, got {config['inter_request_delay']}"
            )

        for key in ("active_hours_start", "active_hours_end"):
            if key in config and not (0 <= config[key] <= 24):
                raise ConfigError(f"{key} must be between 0 and 24, got {config[key]}")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__
