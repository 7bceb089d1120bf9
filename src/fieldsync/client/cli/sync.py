"""Sync commands for FieldSync CLI.

Commands:
- sync: Run one sync cycle against the server
- status: Show queue metrics and connectivity
"""

from __future__ import annotations

import json
import sys

import click

from fieldsync.client.api import SyncClient
from fieldsync.client.cli.runtime import (
    open_conflict_log,
    open_engine,
    open_queue,
    require_config,
    server_config,
)
from fieldsync.client.sync import StoreError


@click.command()
@click.option("--max-items", "-n", type=int, default=None, help="Send at most N items.")
@click.option("--json", "as_json", is_flag=True, help="Print the batch result as JSON.")
def sync(max_items: int | None, as_json: bool) -> None:
    """Send queued mutations to the server (one batch)."""
    config = require_config()
    with open_engine(config) as engine:
        if not engine.is_online:
            click.echo(f"Error: server unreachable at {config['server_url']}", err=True)
            sys.exit(1)
        try:
            result = engine.trigger_sync(max_items=max_items)
        except StoreError as e:
            click.echo(f"Error: cannot read sync queue: {e}", err=True)
            sys.exit(1)

    if result is None:
        click.echo("Sync skipped (offline or already in progress).")
        return
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(
        f"Processed {result.total_processed}: "
        f"{len(result.successful)} synced, "
        f"{len(result.conflicts)} conflicts, "
        f"{len(result.failed)} failed"
    )
    for verdict in result.conflicts:
        click.echo(f"  conflict {verdict.offline_id}: {verdict.message or ''}")
    for verdict in result.failed:
        click.echo(f"  failed   {verdict.offline_id}: {verdict.message or ''}")


@click.command()
def status() -> None:
    """Show queue metrics, conflicts and connectivity."""
    config = require_config()
    with open_queue(config) as queue:
        metrics = queue.get_metrics()
    with open_conflict_log(config) as conflict_log:
        conflicts = conflict_log.stats()
    with SyncClient(server_config(config)) as client:
        online = client.health_check()

    click.echo(f"Server:      {config['server_url']} ({'online' if online else 'offline'})")
    click.echo(f"Queued:      {metrics.total}")
    click.echo(f"  pending:     {metrics.pending}")
    click.echo(f"  retrying:    {metrics.retrying}")
    click.echo(f"  failed:      {metrics.failed}")
    click.echo(f"  max retries: {metrics.max_retries}")
    click.echo(f"Avg attempts: {metrics.avg_retry_attempts:.2f}")
    if metrics.oldest_pending:
        click.echo(f"Oldest pending: {metrics.oldest_pending.isoformat()}")
    click.echo(f"Conflicts:   {conflicts.unresolved} unresolved / {conflicts.total} total")
