"""Queue commands for FieldSync CLI.

Commands:
- enqueue: Add a mutation to the sync queue
- queue list: Show queued items
- queue retry-failed: Reset items that ran out of attempts
- queue clear-failed: Remove items that ran out of attempts
- queue reprioritize: Set the priority of every item of a type
"""

from __future__ import annotations

import json
import sys

import click

from fieldsync.client.cli.runtime import open_queue, require_config
from fieldsync.client.sync import DEFAULT_PRIORITY, InvalidQueueItemError, QueueItemStatus, StoreError
from fieldsync.core.types import EntityType, SyncAction

ENTITY_TYPES = click.Choice([t.value for t in EntityType])
ACTIONS = click.Choice([a.value for a in SyncAction])
STATUSES = click.Choice([s.value for s in QueueItemStatus])


@click.command()
@click.argument("entity_type", type=ENTITY_TYPES)
@click.argument("action", type=ACTIONS)
@click.argument("entity_uuid")
@click.argument("data_json")
@click.option("--priority", "-p", type=int, default=DEFAULT_PRIORITY, show_default=True)
def enqueue(entity_type: str, action: str, entity_uuid: str, data_json: str, priority: int) -> None:
    """Queue a mutation for the next sync.

    DATA_JSON is the payload as a JSON object, e.g. '{"version": 1}'.
    """
    try:
        data = json.loads(data_json)
    except json.JSONDecodeError as e:
        click.echo(f"Error: DATA_JSON is not valid JSON: {e}", err=True)
        sys.exit(1)

    config = require_config()
    with open_queue(config) as queue:
        try:
            item_id = queue.add_item(entity_type, action, entity_uuid, data, priority)
        except (InvalidQueueItemError, StoreError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(item_id)


@click.group()
def queue() -> None:
    """Inspect and manage the sync queue."""


@queue.command("list")
@click.option("--type", "entity_type", type=ENTITY_TYPES, default=None, help="Only this entity type.")
@click.option("--status", type=STATUSES, default=None, help="Only this derived status.")
@click.option("--limit", "-n", type=int, default=None, help="Maximum number of items.")
@click.option(
    "--sort-by",
    type=click.Choice(["priority", "timestamp", "attempts"]),
    default="priority",
    show_default=True,
)
@click.option("--order", type=click.Choice(["asc", "desc"]), default="desc", show_default=True)
def list_cmd(
    entity_type: str | None,
    status: str | None,
    limit: int | None,
    sort_by: str,
    order: str,
) -> None:
    """List queued items."""
    config = require_config()
    with open_queue(config) as q:
        items = q.get_items(
            type=entity_type, status=status, limit=limit, sort_by=sort_by, sort_order=order
        )

    if not items:
        click.echo("Queue is empty.")
        return
    for item in items:
        status_value = item.status.value if item.status else "?"
        line = (
            f"{item.uuid}  {item.type.value:<10} {item.action.value:<6} "
            f"p={item.priority:<3} attempts={item.attempts} {status_value:<11} {item.entity_uuid}"
        )
        if item.error:
            line += f"  error: {item.error}"
        click.echo(line)


@queue.command("retry-failed")
def retry_failed() -> None:
    """Re-enable items that ran out of attempts."""
    config = require_config()
    with open_queue(config) as q:
        count = q.reset_failed_items()
    click.echo(f"Reset {count} failed item(s).")


@queue.command("clear-failed")
@click.confirmation_option(prompt="Permanently remove every failed item?")
def clear_failed() -> None:
    """Remove items that ran out of attempts."""
    config = require_config()
    with open_queue(config) as q:
        count = q.clear_failed_items()
    click.echo(f"Removed {count} failed item(s).")


@queue.command("reprioritize")
@click.argument("entity_type", type=ENTITY_TYPES)
@click.argument("priority", type=int)
def reprioritize(entity_type: str, priority: int) -> None:
    """Set the priority of every queued item of ENTITY_TYPE."""
    config = require_config()
    with open_queue(config) as q:
        count = q.reprioritize_type(entity_type, priority)
    click.echo(f"Updated {count} {entity_type} item(s) to priority {priority}.")
