"""Wiring of queue, client and engine for CLI commands.

Every command builds what it needs from the config file and releases it
when done. Encrypted queues need the device passphrase, read from
FIELDSYNC_PASSPHRASE or prompted for.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import click

from fieldsync.client.api import SyncClient
from fieldsync.client.cli.config import get_conflict_db, get_queue_db, load_config
from fieldsync.client.sync import (
    ConflictLog,
    ConnectivityMonitor,
    SQLiteQueueStore,
    StoreError,
    SyncEngine,
    SyncQueueManager,
)
from fieldsync.core.config import ServerConfig, SyncSettings
from fieldsync.core.crypto import derive_key, verify_passphrase_check


def require_config() -> dict[str, Any]:
    """Load the config file or exit if FieldSync is not initialized."""
    config = load_config()
    if not config.get("server_url"):
        click.echo("Error: FieldSync not initialized. Run 'fieldsync init' first.", err=True)
        sys.exit(1)
    return config


def load_settings(config: dict[str, Any]) -> SyncSettings:
    """Build engine settings from the config file."""
    try:
        return SyncSettings.from_dict(config)
    except (TypeError, ValueError) as e:
        click.echo(f"Error: invalid sync settings in config: {e}", err=True)
        sys.exit(1)


def _encryption_key(config: dict[str, Any]) -> bytes | None:
    salt_hex = config.get("passphrase_salt")
    if not salt_hex:
        return None
    passphrase = os.environ.get("FIELDSYNC_PASSPHRASE") or click.prompt(
        "Device passphrase", hide_input=True
    )
    key = derive_key(passphrase, bytes.fromhex(salt_hex))

    check = config.get("passphrase_check")
    if check and not verify_passphrase_check(check, key):
        click.echo("Error: wrong device passphrase.", err=True)
        sys.exit(1)
    return key


@contextmanager
def open_queue(config: dict[str, Any]) -> Iterator[SyncQueueManager]:
    """Open the queue store and yield a queue manager over it."""
    settings = load_settings(config)
    try:
        store = SQLiteQueueStore(get_queue_db(config), encryption_key=_encryption_key(config))
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    try:
        yield SyncQueueManager(store, max_attempts=settings.max_attempts)
    finally:
        store.close()


@contextmanager
def open_conflict_log(config: dict[str, Any]) -> Iterator[ConflictLog]:
    """Open the conflict log."""
    try:
        log = ConflictLog(get_conflict_db(config))
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    try:
        yield log
    finally:
        log.close()


def server_config(config: dict[str, Any]) -> ServerConfig:
    """Build the batch endpoint configuration."""
    return ServerConfig(
        server_url=config["server_url"],
        token=config.get("auth_token", ""),
        timeout=float(config.get("timeout", 30.0)),
    )


@contextmanager
def open_engine(config: dict[str, Any]) -> Iterator[SyncEngine]:
    """Build a sync engine with a probed connectivity state.

    Connectivity is probed once before the engine exists, so no
    background sync is started.
    """
    settings = load_settings(config)
    with (
        open_queue(config) as queue,
        open_conflict_log(config) as conflict_log,
        SyncClient(server_config(config)) as client,
    ):
        monitor = ConnectivityMonitor(
            probe=client.health_check,
            initial_online=client.health_check(),
        )
        # One-shot command: no background sync after enqueue
        settings.auto_sync = False
        engine = SyncEngine(
            queue,
            client,
            monitor=monitor,
            settings=settings,
            conflict_log=conflict_log,
        )
        try:
            yield engine
        finally:
            engine.destroy()
