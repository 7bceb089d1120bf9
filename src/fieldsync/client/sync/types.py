"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, InvalidQueueItemError: Exception classes
- QueueItem, QueueItemStatus, derive_status: Queue entries and derived status
- QueueMetrics, QueueStatus: Aggregate views for a status UI
- SyncBatchResult: Outcome of one sync cycle (verdicts are api.SyncResult)
- ConnectivityStatus: Current belief about network reachability
- Type aliases for callbacks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fieldsync.client.api import SyncResult
from fieldsync.core.types import EntityType, SyncAction

DEFAULT_PRIORITY = 5


class SyncError(Exception):
    """Base exception for sync errors."""


class InvalidQueueItemError(SyncError, ValueError):
    """A queue operation was called with invalid arguments."""


class QueueItemStatus(str, Enum):
    """Derived status of a queue item.

    Note: This status is computed, not stored. Use derive_status().
    """

    PENDING = "pending"  # Never attempted, ready to send
    RETRYING = "retrying"  # Failed before, waiting for (or due for) retry
    FAILED = "failed"  # Immediate non-retryable failure
    MAX_RETRIES = "max_retries"  # Out of attempts, needs operator reset


@dataclass
class QueueItem:
    """A pending local mutation awaiting synchronization.

    Attributes:
        uuid: Unique id assigned at enqueue time (idempotency key remotely).
        type: Domain entity being mutated.
        action: Mutation kind.
        entity_uuid: Local identifier of the affected record.
        data: Payload replayed against the remote system.
        priority: Higher is more urgent.
        attempts: Sync attempts made so far.
        timestamp: Creation time.
        last_attempt: Time of the most recent sync attempt.
        next_retry: Earliest time the item may be retried.
        error: Last failure message.
        status: Derived status, filled in by the queue manager on read.
    """

    uuid: str
    type: EntityType
    action: SyncAction
    entity_uuid: str
    data: dict[str, Any]
    timestamp: datetime
    priority: int = DEFAULT_PRIORITY
    attempts: int = 0
    last_attempt: datetime | None = None
    next_retry: datetime | None = None
    error: str | None = None
    status: QueueItemStatus | None = field(default=None, compare=False)

    def to_change(self) -> dict[str, Any]:
        """Render the item in the batch endpoint's wire format."""
        version = self.data.get("version", 1)
        return {
            "type": self.type.value,
            "action": self.action.value,
            "data": self.data,
            "offlineId": self.uuid,
            "versionNumber": version if isinstance(version, int) else 1,
            "entityUuid": self.entity_uuid,
        }

    def is_due(self, now: datetime) -> bool:
        """Check whether the item's backoff (if any) has elapsed."""
        return self.next_retry is None or self.next_retry <= now


def derive_status(item: QueueItem, max_attempts: int, now: datetime) -> QueueItemStatus:
    """Derive an item's status from its stored fields.

    Args:
        item: The stored queue item.
        max_attempts: Attempt count at which an item is exhausted.
        now: Reference time for backoff comparisons.

    Returns:
        The derived QueueItemStatus.
    """
    if item.attempts >= max_attempts:
        return QueueItemStatus.MAX_RETRIES
    if item.error is not None and item.next_retry is None:
        return QueueItemStatus.FAILED
    if item.attempts == 0 and item.is_due(now):
        return QueueItemStatus.PENDING
    return QueueItemStatus.RETRYING


def _zero_counts(enum_cls: type[Enum]) -> dict[str, int]:
    return {member.value: 0 for member in enum_cls}


@dataclass
class QueueMetrics:
    """Aggregate counts over the whole queue."""

    total: int = 0
    pending: int = 0
    retrying: int = 0
    failed: int = 0
    max_retries: int = 0
    avg_retry_attempts: float = 0.0
    oldest_pending: datetime | None = None
    by_type: dict[str, int] = field(default_factory=lambda: _zero_counts(EntityType))
    by_action: dict[str, int] = field(default_factory=lambda: _zero_counts(SyncAction))

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "retrying": self.retrying,
            "failed": self.failed,
            "max_retries": self.max_retries,
            "avg_retry_attempts": self.avg_retry_attempts,
            "oldest_pending": self.oldest_pending.isoformat() if self.oldest_pending else None,
            "by_type": dict(self.by_type),
            "by_action": dict(self.by_action),
        }


@dataclass
class SyncBatchResult:
    """Outcome of one sync cycle."""

    successful: list[SyncResult] = field(default_factory=list)
    conflicts: list[SyncResult] = field(default_factory=list)
    failed: list[SyncResult] = field(default_factory=list)
    total_processed: int = 0

    @classmethod
    def empty(cls) -> SyncBatchResult:
        return cls()

    @property
    def has_conflicts(self) -> bool:
        """Check if there are any conflicts."""
        return len(self.conflicts) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": [r.to_dict() for r in self.successful],
            "conflicts": [r.to_dict() for r in self.conflicts],
            "failed": [r.to_dict() for r in self.failed],
            "totalProcessed": self.total_processed,
        }


@dataclass
class ConnectivityStatus:
    """Snapshot of the engine's belief about network reachability."""

    is_online: bool
    connection_type: str | None = None
    checked_at: datetime | None = None


@dataclass
class QueueStatus:
    """Summary of the queue and engine state for status displays."""

    total_items: int
    pending_items: int
    failed_items: int
    oldest_item: datetime | None
    is_online: bool
    sync_in_progress: bool


# Type alias for connectivity listeners
ConnectivityListener = Callable[[ConnectivityStatus], None]

# Type alias for conflict notification callback
ConflictCallback = Callable[[QueueItem, SyncResult], None]
