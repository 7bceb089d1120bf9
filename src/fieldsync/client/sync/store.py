"""Durable local storage for the sync queue.

This module provides:
- QueueStore: Capability protocol the queue manager depends on
- SQLiteQueueStore: SQLite-backed store with optional payload encryption
- MemoryQueueStore: In-process store for tests and ephemeral devices

Every store operation is a single statement (or a single locked dict
mutation), so a mutation never interleaves with another caller's
read-modify-write. Persistence:

    - Durability: SQLite WAL mode, autocommit (each call commits)
    - Isolation: RLock serializes access from the engine's threads
    - Ordering: get_sync_queue() returns rows in insertion order

Payloads are JSON objects. When an encryption key is configured, payloads
are stored sealed (see fieldsync.core.crypto).
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from fieldsync.client.sync.types import QueueItem
from fieldsync.core.crypto import KEY_SIZE, CryptoError, open_text, seal_text
from fieldsync.core.types import EntityType, SyncAction

logger = logging.getLogger(__name__)

# Fields that may change after an item has been enqueued
UPDATABLE_FIELDS = frozenset({"priority", "attempts", "last_attempt", "next_retry", "error"})


class StoreError(Exception):
    """Base exception for local persistence failures."""


class QueueStoreError(StoreError):
    """The queue store could not complete an operation."""


class DuplicateItemError(QueueStoreError):
    """An item with the same uuid is already queued."""


class QueueStore(Protocol):
    """Capability interface of a persistent queue store.

    Any local store satisfying this contract is substitutable.
    Mutating calls return the number of rows affected.
    """

    def get_sync_queue(self) -> list[QueueItem]: ...

    def add_to_sync_queue(self, item: QueueItem) -> None: ...

    def update_sync_queue_item(self, uuid: str, fields: Mapping[str, Any]) -> int: ...

    def increment_attempts(self, uuid: str, fields: Mapping[str, Any]) -> int: ...

    def remove_sync_queue_item(self, uuid: str) -> int: ...

    def count(self) -> int: ...

    def close(self) -> None: ...


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update queue item fields: {sorted(unknown)}")


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteQueueStore:
    """SQLite-based persistent sync queue.

    Attributes:
        db_path: Path to the SQLite database (":memory:" for a throwaway store)
    """

    def __init__(self, db_path: Path | str, encryption_key: bytes | None = None) -> None:
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file.
            encryption_key: Optional 32-byte key to encrypt payloads at rest.
        """
        if encryption_key is not None and len(encryption_key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")

        self._db_path = str(db_path)
        self._key = encryption_key
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        try:
            self._conn = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot open queue database {self._db_path}: {e}") from e
        logger.debug("Opened sync queue at %s", self._db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_uuid TEXT NOT NULL,
                data TEXT NOT NULL,
                encrypted INTEGER NOT NULL DEFAULT 0,
                priority INTEGER NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL,
                last_attempt TEXT,
                next_retry TEXT,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sync_queue_priority
                ON sync_queue (priority DESC, timestamp ASC);
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Payload encoding ===

    def _encode_data(self, data: dict[str, Any]) -> tuple[str, int]:
        raw = json.dumps(data, ensure_ascii=False)
        if self._key is None:
            return raw, 0
        return seal_text(raw, self._key), 1

    def _decode_data(self, stored: str, encrypted: int) -> dict[str, Any]:
        if encrypted:
            if self._key is None:
                raise QueueStoreError("Queue holds encrypted payloads but no key is configured")
            try:
                stored = open_text(stored, self._key)
            except CryptoError as e:
                raise QueueStoreError("Cannot decrypt queued payload (wrong key?)") from e
        try:
            data = json.loads(stored)
        except json.JSONDecodeError as e:
            raise QueueStoreError(f"Corrupt queued payload: {e}") from e
        return dict(data)

    def _row_to_item(self, row: sqlite3.Row) -> QueueItem:
        try:
            return QueueItem(
                uuid=row["uuid"],
                type=EntityType(row["type"]),
                action=SyncAction(row["action"]),
                entity_uuid=row["entity_uuid"],
                data=self._decode_data(row["data"], row["encrypted"]),
                priority=row["priority"],
                attempts=row["attempts"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                last_attempt=_from_db_time(row["last_attempt"]),
                next_retry=_from_db_time(row["next_retry"]),
                error=row["error"],
            )
        except (TypeError, ValueError) as e:
            raise QueueStoreError(f"Corrupt queue row {row['uuid']}: {e}") from e

    # === Queue operations ===

    def get_sync_queue(self) -> list[QueueItem]:
        """Get every queued item in insertion order."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT * FROM sync_queue ORDER BY seq").fetchall()
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot read sync queue: {e}") from e
        return [self._row_to_item(row) for row in rows]

    def add_to_sync_queue(self, item: QueueItem) -> None:
        """Persist a new queue item.

        Raises:
            DuplicateItemError: If the uuid is already queued.
            QueueStoreError: On any other database failure.
        """
        data, encrypted = self._encode_data(item.data)
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO sync_queue
                    (uuid, type, action, entity_uuid, data, encrypted, priority,
                     attempts, timestamp, last_attempt, next_retry, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.uuid,
                        item.type.value,
                        item.action.value,
                        item.entity_uuid,
                        data,
                        encrypted,
                        item.priority,
                        item.attempts,
                        item.timestamp.isoformat(),
                        _to_db(item.last_attempt),
                        _to_db(item.next_retry),
                        item.error,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateItemError(f"Queue item {item.uuid} already exists") from e
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot add queue item {item.uuid}: {e}") from e

    def _update(self, uuid: str, fields: Mapping[str, Any], increment: bool) -> int:
        _check_fields(fields)
        assignments = [f"{name} = ?" for name in fields]
        if increment:
            assignments.append("attempts = attempts + 1")
        if not assignments:
            return 0
        params = [_to_db(value) for value in fields.values()]
        try:
            with self._lock:
                cursor = self._conn.execute(
                    f"UPDATE sync_queue SET {', '.join(assignments)} WHERE uuid = ?",
                    (*params, uuid),
                )
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot update queue item {uuid}: {e}") from e
        return cursor.rowcount

    def update_sync_queue_item(self, uuid: str, fields: Mapping[str, Any]) -> int:
        """Merge fields into a stored item. Returns rows affected."""
        return self._update(uuid, fields, increment=False)

    def increment_attempts(self, uuid: str, fields: Mapping[str, Any]) -> int:
        """Atomically bump attempts and set fields. Returns rows affected."""
        if "attempts" in fields:
            raise ValueError("attempts is incremented, not assigned")
        return self._update(uuid, fields, increment=True)

    def remove_sync_queue_item(self, uuid: str) -> int:
        """Delete an item. Returns rows affected."""
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM sync_queue WHERE uuid = ?", (uuid,))
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot remove queue item {uuid}: {e}") from e
        return cursor.rowcount

    def count(self) -> int:
        """Get number of queued items."""
        try:
            with self._lock:
                row = self._conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()
        except sqlite3.Error as e:
            raise QueueStoreError(f"Cannot count sync queue: {e}") from e
        return int(row[0])


class MemoryQueueStore:
    """Thread-safe in-memory queue store.

    Items are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, QueueItem] = {}  # uuid -> item, insertion ordered

    def get_sync_queue(self) -> list[QueueItem]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._items.values()]

    def add_to_sync_queue(self, item: QueueItem) -> None:
        with self._lock:
            if item.uuid in self._items:
                raise DuplicateItemError(f"Queue item {item.uuid} already exists")
            self._items[item.uuid] = copy.deepcopy(replace(item, status=None))

    def update_sync_queue_item(self, uuid: str, fields: Mapping[str, Any]) -> int:
        _check_fields(fields)
        with self._lock:
            item = self._items.get(uuid)
            if item is None:
                return 0
            self._items[uuid] = replace(item, **fields)
            return 1

    def increment_attempts(self, uuid: str, fields: Mapping[str, Any]) -> int:
        if "attempts" in fields:
            raise ValueError("attempts is incremented, not assigned")
        _check_fields(fields)
        with self._lock:
            item = self._items.get(uuid)
            if item is None:
                return 0
            self._items[uuid] = replace(item, attempts=item.attempts + 1, **fields)
            return 1

    def remove_sync_queue_item(self, uuid: str) -> int:
        with self._lock:
            return 1 if self._items.pop(uuid, None) is not None else 0

    def count(self) -> int:
        with self._lock:
            return len(self._items)

    def close(self) -> None:
        """Nothing to release."""
