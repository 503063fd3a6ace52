"""
Typed runtime settings for tenant-sync.

Combines values from the YAML configuration file with secrets taken from
the environment. Secrets are never read from the configuration file.

Environment variables:
    NOTION_API_KEY         Notion integration token (name configurable via
                           the notion_token_env key)
    NOTION_WEBHOOK_SECRET  Shared secret for webhook signature verification
    NOTION_CLIENTS_DB_ID   Overrides collection_id from the config file
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from tenant_sync.config.loader import ConfigError
from tenant_sync.daemon import parse_interval
from tenant_sync.utils.paths import resolve_config_dir, resolve_db_path

DEFAULT_TOKEN_ENV = "NOTION_API_KEY"
WEBHOOK_SECRET_ENV = "NOTION_WEBHOOK_SECRET"
COLLECTION_ID_ENV = "NOTION_CLIENTS_DB_ID"

# Match acceptance threshold for fuzzy and base-name strategies (exclusive)
DEFAULT_FUZZY_THRESHOLD = 0.75

# Minimum spacing between Notion API calls, roughly three requests per second
DEFAULT_INTER_REQUEST_DELAY = 0.35


@dataclass
class Settings:
    """
    Resolved settings for one process.

    Durations are stored in seconds; the config file accepts interval
    strings such as "30m" or "24h".
    """

    collection_id: str = ""
    notion_token: str = ""
    webhook_secret: str = ""
    db_path: str = ":memory:"
    config_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    request_timeout: float = 30.0
    inter_request_delay: float = DEFAULT_INTER_REQUEST_DELAY
    max_retries: int = 5
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    incremental_interval: int = 30 * 60
    full_interval: int = 24 * 3600
    incremental_lookback: int = 2 * 3600
    max_staleness: int = 2 * 3600
    active_hours_start: int = 9
    active_hours_end: int = 18
    scheduler_enabled: bool = True
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 8080

    @classmethod
    def from_dict(
        cls,
        config: dict[str, Any],
        config_dir: Path | None = None,
        environ: Optional[dict[str, str]] = None,
    ) -> Settings:
        """
        Build settings from a validated configuration dictionary.

        Args:
            config: Dictionary produced by ConfigLoader.load_and_validate()
            config_dir: Configuration directory; relative paths resolve
                        against it
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ConfigError: If an interval value cannot be parsed
        """
        env = os.environ if environ is None else environ
        resolved_dir = resolve_config_dir(config_dir)

        token_env = config.get("notion_token_env", DEFAULT_TOKEN_ENV)
        log_dir = config.get("log_dir")

        try:
            intervals = {
                key: parse_interval(config[key])
                for key in (
                    "incremental_interval",
                    "full_interval",
                    "incremental_lookback",
                    "max_staleness",
                )
                if key in config
            }
        except ValueError as e:
            raise ConfigError(str(e)) from e

        return cls(
            collection_id=env.get(COLLECTION_ID_ENV) or config.get("collection_id", ""),
            notion_token=env.get(token_env, ""),
            webhook_secret=env.get(WEBHOOK_SECRET_ENV, ""),
            db_path=resolve_db_path(config.get("db_path"), resolved_dir),
            config_dir=resolved_dir,
            log_dir=Path(log_dir).expanduser() if log_dir else resolved_dir / "logs",
            request_timeout=float(config.get("request_timeout", 30.0)),
            inter_request_delay=float(
                config.get("inter_request_delay", DEFAULT_INTER_REQUEST_DELAY)
            ),
            max_retries=config.get("max_retries", 5),
            fuzzy_threshold=float(
                config.get("fuzzy_threshold", DEFAULT_FUZZY_THRESHOLD)
            ),
            active_hours_start=config.get("active_hours_start", 9),
            active_hours_end=config.get("active_hours_end", 18),
            scheduler_enabled=config.get("scheduler_enabled", True),
            webhook_host=config.get("webhook_host", "127.0.0.1"),
            webhook_port=config.get("webhook_port", 8080),
            **intervals,
        )

    def require_source(self) -> None:
        """
        Ensure the values needed to talk to Notion are present.

        Raises:
            ConfigError: If the token or collection id is missing
        """
        missing = []
        if not self.notion_token:
            missing.append("Notion API token")
        if not self.collection_id:
            missing.append("collection_id")
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    @property
    def verifies_signatures(self) -> bool:
        return bool(self.webhook_secret)
