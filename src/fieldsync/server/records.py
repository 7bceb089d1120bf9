"""Versioned record registry for the reference batch endpoint.

This module provides:
- RecordRegistry: Thread-safe in-memory records keyed by (type, entityUuid)
- ServerRecord: One stored record

Conflict rules:
    create on an existing record                  -> conflict
    update/delete whose versionNumber differs
    from the server version                       -> conflict
    update/delete of an unknown record            -> failed
    anything else                                 -> success

A conflict verdict carries the server copy:
    {"serverVersion": <int>, "serverData": {...}}

Verdicts are idempotent per offlineId: replaying a change that succeeded
or conflicted returns that verdict without applying it again. Failed
changes are evaluated afresh, since the device retries them.
"""

from __future__ import annotations

import logging
import threading
import uuid as uuid_lib
from dataclasses import dataclass, field
from typing import Any

from fieldsync.core.types import EntityType, SyncAction, VerdictStatus
from fieldsync.server.schemas import ChangeRequest, VerdictResponse

logger = logging.getLogger(__name__)


@dataclass
class ServerRecord:
    """Server-side copy of a domain record."""

    type: EntityType
    entity_uuid: str
    server_id: str
    version: int
    data: dict[str, Any] = field(default_factory=dict)


class RecordRegistry:
    """In-memory versioned record store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[EntityType, str], ServerRecord] = {}
        self._verdicts: dict[str, VerdictResponse] = {}  # offlineId -> first verdict

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, type: EntityType | str, entity_uuid: str) -> ServerRecord | None:
        """Get a record by entity type and uuid."""
        with self._lock:
            return self._records.get((EntityType(type), entity_uuid))

    def put(
        self,
        type: EntityType | str,
        entity_uuid: str,
        data: dict[str, Any],
        version: int = 1,
    ) -> ServerRecord:
        """Insert or replace a record directly (simulates edits made elsewhere)."""
        entity_type = EntityType(type)
        with self._lock:
            existing = self._records.get((entity_type, entity_uuid))
            record = ServerRecord(
                type=entity_type,
                entity_uuid=entity_uuid,
                server_id=existing.server_id if existing else str(uuid_lib.uuid4()),
                version=version,
                data=dict(data),
            )
            self._records[(entity_type, entity_uuid)] = record
            return record

    def apply(self, change: ChangeRequest) -> VerdictResponse:
        """Apply one change and return its verdict."""
        with self._lock:
            previous = self._verdicts.get(change.offline_id)
            if previous is not None:
                logger.debug("Replayed change %s, returning first verdict", change.offline_id)
                return previous
            verdict = self._apply(change)
            if verdict.status != VerdictStatus.FAILED:
                self._verdicts[change.offline_id] = verdict
            return verdict

    def _apply(self, change: ChangeRequest) -> VerdictResponse:
        key = (change.type, change.entity_uuid)
        record = self._records.get(key)

        if change.action == SyncAction.CREATE:
            if record is not None:
                return self._conflict(change, record, "Record already exists")
            record = ServerRecord(
                type=change.type,
                entity_uuid=change.entity_uuid,
                server_id=str(uuid_lib.uuid4()),
                version=1,
                data=dict(change.data),
            )
            self._records[key] = record
            return self._success(change, record)

        if record is None:
            return VerdictResponse(
                offline_id=change.offline_id,
                status=VerdictStatus.FAILED,
                message=f"{change.type.value} {change.entity_uuid} not found",
            )
        if change.version_number != record.version:
            return self._conflict(
                change,
                record,
                f"Version mismatch: local {change.version_number}, server {record.version}",
            )

        if change.action == SyncAction.UPDATE:
            record.version += 1
            record.data = dict(change.data)
        else:
            del self._records[key]
        return self._success(change, record)

    @staticmethod
    def _success(change: ChangeRequest, record: ServerRecord) -> VerdictResponse:
        return VerdictResponse(
            offline_id=change.offline_id,
            server_id=record.server_id,
            status=VerdictStatus.SUCCESS,
        )

    @staticmethod
    def _conflict(change: ChangeRequest, record: ServerRecord, message: str) -> VerdictResponse:
        logger.info("Conflict on %s %s: %s", change.type.value, change.entity_uuid, message)
        return VerdictResponse(
            offline_id=change.offline_id,
            server_id=record.server_id,
            status=VerdictStatus.CONFLICT,
            message=message,
            conflict_data={"serverVersion": record.version, "serverData": dict(record.data)},
        )
