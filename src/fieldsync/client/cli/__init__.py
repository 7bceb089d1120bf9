"""Command-line interface for FieldSync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Configure this device
- enqueue: Queue a mutation
- queue: Inspect and manage the sync queue
- status: Show queue metrics and connectivity
- sync: Run one sync cycle
- conflicts: Review conflicts
- serve: Run the reference batch endpoint
"""

from __future__ import annotations

import logging

import click

from fieldsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from fieldsync.client.cli.conflicts import conflicts
from fieldsync.client.cli.init import init
from fieldsync.client.cli.queue import enqueue, queue
from fieldsync.client.cli.serve import serve
from fieldsync.client.cli.sync import status, sync


@click.group()
@click.version_option(package_name="fieldsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """FieldSync - offline-first field data sync."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Setup
cli.add_command(init)

# Queue commands
cli.add_command(enqueue)
cli.add_command(queue)

# Sync commands
cli.add_command(sync)
cli.add_command(status)
cli.add_command(conflicts)

# Reference server
cli.add_command(serve)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
