"""Conflict review commands for FieldSync CLI.

Commands:
- conflicts: List logged conflicts
- conflicts resolve: Mark a conflict as resolved
"""

from __future__ import annotations

import getpass
import json
import sys

import click

from fieldsync.client.cli.runtime import open_conflict_log, require_config


@click.group(invoke_without_command=True)
@click.option("--all", "show_all", is_flag=True, help="Include resolved conflicts.")
@click.pass_context
def conflicts(ctx: click.Context, show_all: bool) -> None:
    """List conflicts handed off for review."""
    if ctx.invoked_subcommand is not None:
        return

    config = require_config()
    with open_conflict_log(config) as conflict_log:
        records = conflict_log.list_conflicts(unresolved_only=not show_all)

    if not records:
        click.echo("No conflicts.")
        return
    for record in records:
        state = f"resolved by {record.resolved_by or '?'}" if record.is_resolved else "open"
        click.echo(
            f"{record.conflict_id}  {record.entity_type.value:<10} {record.action.value:<6} "
            f"{record.entity_uuid}  [{state}]"
        )
        if record.message:
            click.echo(f"    {record.message}")
        if record.conflict_data is not None:
            click.echo(f"    server: {json.dumps(record.conflict_data)}")


@conflicts.command("resolve")
@click.argument("conflict_id")
@click.option("--by", "resolved_by", default=None, help="Who resolved it (default: current user).")
def resolve(conflict_id: str, resolved_by: str | None) -> None:
    """Mark CONFLICT_ID as resolved."""
    config = require_config()
    with open_conflict_log(config) as conflict_log:
        resolved = conflict_log.mark_resolved(conflict_id, resolved_by or getpass.getuser())
    if not resolved:
        click.echo(f"Error: no open conflict {conflict_id}", err=True)
        sys.exit(1)
    click.echo(f"Conflict {conflict_id} resolved.")
