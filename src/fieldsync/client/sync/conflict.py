"""Conflict log for operator review.

This module provides:
- ConflictLog: SQLite-backed record of conflict verdicts
- ConflictRecord: One logged conflict
- ConflictStats: Aggregate counts for status displays
- ConflictLogError: Persistence failure

A conflict verdict is terminal for the sync engine: the queued mutation is
removed and its fate is decided by whoever resolves the conflict. The log
keeps the local payload next to the server's copy so that resolution can
re-enter a fresh mutation through SyncQueueManager.add_item().
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid as uuid_lib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fieldsync.client.api import SyncResult
from fieldsync.client.sync.store import StoreError
from fieldsync.client.sync.types import QueueItem
from fieldsync.core.types import EntityType, SyncAction

logger = logging.getLogger(__name__)


class ConflictLogError(StoreError):
    """The conflict log could not complete an operation."""


@dataclass
class ConflictRecord:
    """A conflict handed off for operator review.

    Attributes:
        conflict_id: Unique id of this log entry.
        offline_id: uuid of the queue item that conflicted.
        entity_type: Entity type of the queued mutation.
        entity_uuid: Local identifier of the affected record.
        action: Mutation kind.
        server_id: Server identifier from the verdict.
        message: Verdict message.
        local_data: Payload the device tried to apply.
        conflict_data: Server copy returned with the verdict.
        created_at: When the conflict was logged.
        resolved_at: When an operator resolved it.
        resolved_by: Who resolved it.
    """

    conflict_id: str
    offline_id: str
    entity_type: EntityType
    entity_uuid: str
    action: SyncAction
    server_id: str
    message: str | None
    local_data: dict[str, Any]
    conflict_data: Any
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ConflictRecord:
        """Create ConflictRecord from database row."""
        return cls(
            conflict_id=row["conflict_id"],
            offline_id=row["offline_id"],
            entity_type=EntityType(row["entity_type"]),
            entity_uuid=row["entity_uuid"],
            action=SyncAction(row["action"]),
            server_id=row["server_id"],
            message=row["message"],
            local_data=json.loads(row["local_data"]),
            conflict_data=json.loads(row["conflict_data"]) if row["conflict_data"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None,
            resolved_by=row["resolved_by"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "offline_id": self.offline_id,
            "entity_type": self.entity_type.value,
            "entity_uuid": self.entity_uuid,
            "action": self.action.value,
            "server_id": self.server_id,
            "message": self.message,
            "local_data": self.local_data,
            "conflict_data": self.conflict_data,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


@dataclass
class ConflictStats:
    """Aggregate conflict counts."""

    total: int = 0
    unresolved: int = 0
    resolved: int = 0
    by_type: dict[str, int] = field(
        default_factory=lambda: {member.value: 0 for member in EntityType}
    )


class ConflictLog:
    """SQLite-based conflict log.

    Use ":memory:" for a log that lives only as long as the process.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        """Open (and create if needed) the conflict log.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS conflicts (
                    conflict_id TEXT PRIMARY KEY,
                    offline_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_uuid TEXT NOT NULL,
                    action TEXT NOT NULL,
                    server_id TEXT NOT NULL,
                    message TEXT,
                    local_data TEXT NOT NULL,
                    conflict_data TEXT,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolved_by TEXT
                )
            """)
        except sqlite3.Error as e:
            raise ConflictLogError(f"Cannot open conflict log {self._db_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _execute(
        self, sql: str, params: tuple[Any, ...] = (), fetch: bool = False
    ) -> list[sqlite3.Row] | int:
        """Run one statement. Returns fetched rows, or rows affected."""
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                return cursor.fetchall() if fetch else cursor.rowcount
        except sqlite3.Error as e:
            raise ConflictLogError(f"Conflict log error: {e}") from e

    def record(self, item: QueueItem, verdict: SyncResult) -> ConflictRecord:
        """Log a conflict verdict for a queue item.

        Args:
            item: The queue item that conflicted.
            verdict: The server's conflict verdict.

        Returns:
            The stored record.

        Raises:
            ConflictLogError: If the record cannot be stored.
        """
        record = ConflictRecord(
            conflict_id=str(uuid_lib.uuid4()),
            offline_id=item.uuid,
            entity_type=item.type,
            entity_uuid=item.entity_uuid,
            action=item.action,
            server_id=verdict.server_id,
            message=verdict.message,
            local_data=item.data,
            conflict_data=verdict.conflict_data,
            created_at=datetime.now(UTC),
        )
        try:
            conflict_json = (
                json.dumps(record.conflict_data) if record.conflict_data is not None else None
            )
            local_json = json.dumps(record.local_data)
        except (TypeError, ValueError) as e:
            raise ConflictLogError(f"Conflict data is not serializable: {e}") from e

        self._execute(
            """
            INSERT INTO conflicts
            (conflict_id, offline_id, entity_type, entity_uuid, action, server_id,
             message, local_data, conflict_data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.conflict_id,
                record.offline_id,
                record.entity_type.value,
                record.entity_uuid,
                record.action.value,
                record.server_id,
                record.message,
                local_json,
                conflict_json,
                record.created_at.isoformat(),
            ),
        )
        logger.debug("Logged conflict %s for item %s", record.conflict_id, item.uuid)
        return record

    def get(self, conflict_id: str) -> ConflictRecord | None:
        """Get a conflict by id."""
        rows = self._execute(
            "SELECT * FROM conflicts WHERE conflict_id = ?", (conflict_id,), fetch=True
        )
        return ConflictRecord.from_row(rows[0]) if rows else None

    def list_conflicts(
        self,
        unresolved_only: bool = True,
        entity_type: EntityType | str | None = None,
        limit: int | None = None,
    ) -> list[ConflictRecord]:
        """List conflicts, oldest first.

        Args:
            unresolved_only: Skip resolved conflicts.
            entity_type: Only conflicts for this entity type.
            limit: Maximum number of records.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if unresolved_only:
            clauses.append("resolved_at IS NULL")
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(EntityType(entity_type).value)

        sql = "SELECT * FROM conflicts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._execute(sql, tuple(params), fetch=True)
        return [ConflictRecord.from_row(row) for row in rows]

    def mark_resolved(self, conflict_id: str, resolved_by: str | None = None) -> bool:
        """Mark a conflict as resolved.

        Returns:
            True if an unresolved conflict was updated.
        """
        updated = self._execute(
            """
            UPDATE conflicts SET resolved_at = ?, resolved_by = ?
            WHERE conflict_id = ? AND resolved_at IS NULL
            """,
            (datetime.now(UTC).isoformat(), resolved_by, conflict_id),
        )
        return updated > 0

    def stats(self) -> ConflictStats:
        """Get aggregate conflict counts."""
        stats = ConflictStats()
        rows = self._execute(
            """
            SELECT entity_type, resolved_at IS NOT NULL AS resolved, COUNT(*) AS n
            FROM conflicts GROUP BY entity_type, resolved
            """,
            fetch=True,
        )
        for row in rows:
            stats.total += row["n"]
            stats.by_type[row["entity_type"]] = stats.by_type.get(row["entity_type"], 0) + row["n"]
            if row["resolved"]:
                stats.resolved += row["n"]
            else:
                stats.unresolved += row["n"]
        return stats
