"""
Command-line interface for tenant_sync.

Provides CLI commands for running syncs, upserting or deleting a single
record, inspecting the registry and running the webhook server or the
scheduler daemon.

Usage:
    # Show help
    tenant-sync --help

    # Run synchronization
    tenant-sync sync --full
    tenant-sync sync --hours 6

    # Single record
    tenant-sync upsert 59833787-2cf9-4fdf-8782-e53db20768a5

    # Webhook server with background scheduler
    tenant-sync serve --port 8080
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click

from tenant_sync import __version__
from tenant_sync.api.notion_api import RecordNotFoundError, SourceError
from tenant_sync.app_factory import Services, build_services, open_registry
from tenant_sync.cli.formatters import show_sync_run, show_tenants, show_upsert_outcome
from tenant_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from tenant_sync.config.settings import Settings
from tenant_sync.daemon.pidfile import DaemonError, PIDFileManager
from tenant_sync.storage.db import RegistryError
from tenant_sync.sync.record import InvalidRecordError
from tenant_sync.utils import resolve_config_dir
from tenant_sync.utils.logging import (
    cleanup_old_logs,
    get_logger,
    get_matching_log_path,
    setup_logging,
    setup_matching_logger,
)


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def _services(ctx: click.Context) -> Services:
    """Build runtime services, exiting with an error if configuration is incomplete."""
    settings: Settings = ctx.obj["settings"]
    try:
        services = build_services(settings)
    except (ConfigError, RegistryError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    setup_matching_logger(log_file=get_matching_log_path(settings.log_dir))
    return services


def _parse_since(value: str) -> datetime:
    try:
        since = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"Invalid ISO timestamp: {value}")
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since


@click.group()
@click.version_option(version=__version__, prog_name="tenant-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="TENANT_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.tenant-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="TENANT_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    Notion clients database to tenant registry sync.

    Keeps the tenant registry consistent with the Notion clients database:
    records are matched to existing tenants, new tenants are created and
    tenants whose page was deleted are removed.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = (
        Path(config_file) if config_file else resolved_config_dir / DEFAULT_CONFIG_FILE
    )
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Keep going with defaults so status and --help still work
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    try:
        settings = Settings.from_dict(config, config_dir=resolved_config_dir)
    except ConfigError as e:
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        settings = Settings.from_dict({}, config_dir=resolved_config_dir)

    ctx.obj["config"] = config
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = verbose

    setup_logging(verbose=verbose, log_dir=settings.log_dir)
    cleanup_old_logs(log_dir=settings.log_dir)


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("sync")
@click.option("--full", is_flag=True, help="Sync every record in the collection.")
@click.option(
    "--since",
    "since_text",
    help="Only records edited after this ISO 8601 timestamp.",
)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    help="Only records edited in the last N hours.",
)
@click.pass_context
def sync_command(
    ctx: click.Context, full: bool, since_text: Optional[str], hours: Optional[int]
) -> None:
    """
    Run a full or incremental sync.

    Without options, runs an incremental sync over the configured lookback
    window. Incremental syncs also remove tenants whose Notion page no
    longer exists.

    Examples:

        tenant-sync sync --full

        tenant-sync sync --since 2024-03-01T00:00:00Z
    """
    logger = get_logger(__name__)

    if full and (since_text or hours):
        raise click.UsageError("--full cannot be combined with --since or --hours")
    if since_text and hours:
        raise click.UsageError("Use either --since or --hours, not both")

    services = _services(ctx)

    if full:
        run = services.engine.run_full()
    else:
        if since_text:
            since = _parse_since(since_text)
        else:
            lookback = (
                hours * 3600 if hours else services.settings.incremental_lookback
            )
            since = datetime.now(timezone.utc) - timedelta(seconds=lookback)
        run = services.engine.run_incremental(since)

    logger.debug(run.summary())
    show_sync_run(run)
    if not run.success:
        sys.exit(1)


@cli.command("upsert")
@click.argument("record_id")
@click.pass_context
def upsert_command(ctx: click.Context, record_id: str) -> None:
    """
    Create or update the tenant for one Notion page.

    Example:

        tenant-sync upsert 59833787-2cf9-4fdf-8782-e53db20768a5
    """
    services = _services(ctx)
    try:
        outcome = services.engine.upsert_one(record_id)
    except RecordNotFoundError:
        click.echo(click.style(f"Page not found: {record_id}", fg="red"), err=True)
        sys.exit(1)
    except (SourceError, InvalidRecordError, RegistryError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    show_upsert_outcome(outcome)


@cli.command("delete")
@click.argument("record_id")
@click.pass_context
def delete_command(ctx: click.Context, record_id: str) -> None:
    """
    Remove the tenant(s) belonging to a deleted Notion page.
    """
    services = _services(ctx)
    try:
        deleted = services.engine.delete_for_record(record_id)
    except (SourceError, RegistryError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if not deleted:
        click.echo(f"No tenant found for page {record_id}")
        return
    for tenant in deleted:
        click.echo(click.style(f"Deleted tenant {tenant.slug} ({tenant.id})", fg="green"))


# =============================================================================
# Status Commands
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show configuration and registry status.

    Does not contact Notion.
    """
    settings: Settings = ctx.obj["settings"]

    click.echo("=== Tenant Sync Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    click.echo(f"Registry database: {settings.db_path}")
    click.echo(f"Collection: {settings.collection_id or click.style('not set', fg='red')}")
    token_text = (
        click.style("Found", fg="green")
        if settings.notion_token
        else click.style("Not set", fg="red")
    )
    click.echo(f"Notion API token: {token_text}")
    signature_text = (
        "enabled"
        if settings.verifies_signatures
        else click.style("disabled (NOTION_WEBHOOK_SECRET not set)", fg="yellow")
    )
    click.echo(f"Webhook signature verification: {signature_text}")
    click.echo(f"Fuzzy match threshold: {settings.fuzzy_threshold}")
    click.echo()

    try:
        db = open_registry(settings.db_path)
        click.echo(f"Tenants: {db.get_tenant_count()}")
        click.echo(f"Linked to Notion pages: {db.get_linked_count()}")
    except RegistryError as e:
        click.echo(click.style(f"Error reading registry: {e}", fg="red"), err=True)
        sys.exit(1)


@cli.command("list")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    """List tenants in the registry, oldest first."""
    settings: Settings = ctx.obj["settings"]
    try:
        db = open_registry(settings.db_path)
        show_tenants(db.list_tenants())
    except RegistryError as e:
        click.echo(click.style(f"Error reading registry: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Long-running Commands
# =============================================================================


@cli.command("serve")
@click.option("--host", help="Bind address (default from config: 127.0.0.1).")
@click.option("--port", type=int, help="Port (default from config: 8080).")
@click.option(
    "--no-scheduler",
    is_flag=True,
    help="Only serve webhooks and admin endpoints; do not run scheduled syncs.",
)
@click.pass_context
def serve_command(
    ctx: click.Context, host: Optional[str], port: Optional[int], no_scheduler: bool
) -> None:
    """
    Run the webhook and admin HTTP server.
    """
    import uvicorn

    from tenant_sync.web.app import create_app

    services = _services(ctx)
    settings = services.settings
    start_scheduler = settings.scheduler_enabled and not no_scheduler
    app = create_app(services, start_scheduler=start_scheduler)

    uvicorn.run(
        app,
        host=host or settings.webhook_host,
        port=port or settings.webhook_port,
        log_config=None,
    )


@cli.command("daemon")
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Wait for the first interval instead of syncing on start.",
)
@click.pass_context
def daemon_command(ctx: click.Context, no_initial_sync: bool) -> None:
    """
    Run scheduled syncs in the foreground until interrupted.
    """
    logger = get_logger(__name__)
    services = _services(ctx)
    scheduler = services.scheduler
    scheduler.run_immediately = not no_initial_sync

    pid_file = ctx.obj["config_dir"] / "daemon.pid"
    try:
        with PIDFileManager(pid_file):
            scheduler.run()
    except DaemonError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    logger.info("Daemon exited")
