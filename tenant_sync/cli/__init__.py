"""CLI package for tenant_sync."""

from tenant_sync.cli.formatters import show_sync_run, show_tenants, show_upsert_outcome
from tenant_sync.cli.main import cli, get_config_dir

__all__ = [
    "cli",
    "get_config_dir",
    "show_sync_run",
    "show_tenants",
    "show_upsert_outcome",
]
