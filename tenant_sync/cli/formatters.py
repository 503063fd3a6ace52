"""CLI output formatting functions.

This module contains functions for displaying sync runs, upsert outcomes
and the tenant registry on the command line.
"""

from typing import TYPE_CHECKING

import click

from tenant_sync.sync.engine import RunStatus

if TYPE_CHECKING:
    from tenant_sync.sync.engine import SyncRun, UpsertOutcome
    from tenant_sync.sync.tenant import TenantEntity

# Errors listed before the output is truncated
MAX_ERRORS_SHOWN = 10

_STATUS_COLORS = {
    RunStatus.COMPLETED: "green",
    RunStatus.CANCELLED: "yellow",
    RunStatus.ALREADY_IN_PROGRESS: "yellow",
    RunStatus.FAILED: "red",
}


def show_sync_run(run: "SyncRun") -> None:
    """
    Display the counters and errors of a sync run.

    Args:
        run: The SyncRun returned by the engine
    """
    status_text = click.style(
        run.status.value, fg=_STATUS_COLORS.get(run.status, "white")
    )
    click.echo(f"\n=== {run.kind.value.capitalize()} Sync: {status_text} ===")
    if run.since:
        click.echo(f"Since:    {run.since.isoformat()}")
    click.echo(f"Records:  {run.total}")
    click.echo(f"Created:  {run.created}")
    click.echo(f"Updated:  {run.updated}")
    click.echo(f"Skipped:  {run.skipped}")
    click.echo(f"Deleted:  {run.deleted}")
    if run.duration_seconds is not None:
        click.echo(f"Duration: {run.duration_seconds:.1f}s")

    if run.errors:
        click.echo(click.style(f"\nErrors ({len(run.errors)}):", fg="red"))
        for error in run.errors[:MAX_ERRORS_SHOWN]:
            click.echo(f"  - {error}")
        if len(run.errors) > MAX_ERRORS_SHOWN:
            click.echo(f"  ... and {len(run.errors) - MAX_ERRORS_SHOWN} more")


def show_upsert_outcome(outcome: "UpsertOutcome") -> None:
    entity = outcome.entity
    if outcome.created:
        click.echo(click.style(f"Created tenant {entity.slug}", fg="green"))
    else:
        how = outcome.match.strategy.value if outcome.match else "unknown"
        click.echo(click.style(f"Updated tenant {entity.slug}", fg="green"))
        click.echo(f"  Matched via: {how}")
    click.echo(f"  Name: {entity.name}")
    click.echo(f"  ID:   {entity.id}")
    if entity.contact_email:
        click.echo(f"  Email: {entity.contact_email}")


def show_tenants(tenants: "list[TenantEntity]") -> None:
    """Print one line per tenant: slug, name and linked source record."""
    if not tenants:
        click.echo("No tenants in registry.")
        return

    width = max(len(t.slug) for t in tenants)
    for tenant in tenants:
        linked = tenant.source_record_id or click.style("unlinked", fg="yellow")
        click.echo(f"{tenant.slug.ljust(width)}  {tenant.name}  [{linked}]")
    click.echo(f"\n{len(tenants)} tenant(s)")
