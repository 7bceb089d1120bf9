"""Configuration utilities for FieldSync CLI.

This module provides shared configuration functions used across CLI commands.

Config file keys:
- server_url, auth_token: batch endpoint connection
- queue_db, conflict_db: local database paths
- passphrase_salt: hex salt, present when the queue is encrypted
- passphrase_check: known value encrypted under the device key
- any SyncSettings field (max_attempts, max_batch_size, ...)
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


def get_config_dir() -> Path:
    """Get the configuration directory for FieldSync.

    Returns:
        Path from FIELDSYNC_HOME, or ~/.fieldsync.
    """
    override = os.environ.get("FIELDSYNC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".fieldsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_queue_db(config: dict[str, Any]) -> Path:
    """Get the queue database path (configured or default)."""
    if config.get("queue_db"):
        return Path(config["queue_db"]).expanduser()
    return get_config_dir() / "queue.db"


def get_conflict_db(config: dict[str, Any]) -> Path:
    """Get the conflict log database path (configured or default)."""
    if config.get("conflict_db"):
        return Path(config["conflict_db"]).expanduser()
    return get_config_dir() / "conflicts.db"
