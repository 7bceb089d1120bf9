"""Queue manager for offline mutations.

This module provides:
- SyncQueueManager: CRUD, derived status and metrics over the sync queue

The manager is the single code path through which queue contents change.
It never talks to the network; the SyncEngine drives delivery through it.

Error policy:
    - add_item() validates its arguments (InvalidQueueItemError) and lets
      store failures propagate, so an enqueue is never silently lost.
    - Read and mutate operations swallow StoreError, log it, and return
      None / [] / False / 0 / zeroed metrics instead.
    - next_batch() lets store failures propagate: a sync cycle that cannot
      read the queue has an unknown outcome and must say so.

Sorting:
    Items sort by the requested key; ties on that key always fall back
    to timestamp ascending (oldest first).
"""

from __future__ import annotations

import json
import logging
import uuid as uuid_lib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from fieldsync.client.sync.retry import DEFAULT_MAX_ATTEMPTS
from fieldsync.client.sync.store import UPDATABLE_FIELDS, QueueStore, StoreError
from fieldsync.client.sync.types import (
    DEFAULT_PRIORITY,
    InvalidQueueItemError,
    QueueItem,
    QueueItemStatus,
    QueueMetrics,
    derive_status,
)
from fieldsync.core.types import EntityType, SyncAction

logger = logging.getLogger(__name__)

SORT_KEYS = ("priority", "timestamp", "attempts")
SORT_ORDERS = ("asc", "desc")


def utc_now() -> datetime:
    """Default clock: timezone-aware UTC now."""
    return datetime.now(UTC)


def _coerce_enum(enum_cls: type[EntityType] | type[SyncAction], value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidQueueItemError(f"Invalid {label} {value!r} (expected one of: {allowed})") from None


def _check_priority(priority: Any) -> int:
    # bool is an int subclass but never a meaningful priority
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidQueueItemError(f"Priority must be an integer, got {priority!r}")
    return priority


class SyncQueueManager:
    """Owns the sync queue's contents and derived views.

    Usage:
        store = SQLiteQueueStore(path)
        queue = SyncQueueManager(store)
        item_id = queue.add_item("assessment", "create", entity_id, {"version": 1})
        queue.get_item(item_id).status  # QueueItemStatus.PENDING

    Attributes:
        max_attempts: Attempt count at which an item is exhausted.
    """

    def __init__(
        self,
        store: QueueStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the queue manager.

        Args:
            store: Persistent queue store.
            max_attempts: Attempt count at which an item stops being retried.
            clock: Returns the current (timezone-aware) time.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._max_attempts = max_attempts
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def store(self) -> QueueStore:
        return self._store

    def now(self) -> datetime:
        """Get the current time from the manager's clock."""
        return self._clock()

    def _decorate(self, items: Iterable[QueueItem], now: datetime) -> list[QueueItem]:
        return [
            replace(item, status=derive_status(item, self._max_attempts, now))
            for item in items
        ]

    def _load(self) -> list[QueueItem]:
        """Read and decorate every item. Store errors propagate."""
        return self._decorate(self._store.get_sync_queue(), self._clock())

    @staticmethod
    def _sorted(items: list[QueueItem], sort_by: str, descending: bool) -> list[QueueItem]:
        # Stable sorts: the timestamp pass survives as the tie-break
        by_age = sorted(items, key=lambda item: item.timestamp)
        return sorted(by_age, key=lambda item: getattr(item, sort_by), reverse=descending)

    # === Enqueue ===

    def add_item(
        self,
        type: EntityType | str,
        action: SyncAction | str,
        entity_uuid: str,
        data: Mapping[str, Any],
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Persist a new queue item.

        Args:
            type: Entity type being mutated.
            action: create, update or delete.
            entity_uuid: Local identifier of the affected record.
            data: JSON-serializable payload.
            priority: Higher is more urgent.

        Returns:
            The new item's uuid.

        Raises:
            InvalidQueueItemError: If any argument is invalid.
            StoreError: If the store cannot persist the item.
        """
        entity_type = _coerce_enum(EntityType, type, "entity type")
        sync_action = _coerce_enum(SyncAction, action, "action")
        if not isinstance(entity_uuid, str) or not entity_uuid.strip():
            raise InvalidQueueItemError("entity_uuid must be a non-empty string")
        if not isinstance(data, Mapping):
            raise InvalidQueueItemError(f"data must be an object, got {data.__class__.__name__}")
        try:
            payload = json.loads(json.dumps(dict(data), allow_nan=False))
        except (TypeError, ValueError) as e:
            raise InvalidQueueItemError(f"data is not JSON-serializable: {e}") from e
        priority = _check_priority(priority)

        item = QueueItem(
            uuid=str(uuid_lib.uuid4()),
            type=entity_type,
            action=sync_action,
            entity_uuid=entity_uuid,
            data=payload,
            timestamp=self._clock(),
            priority=priority,
        )
        self._store.add_to_sync_queue(item)
        logger.debug(
            "Queued %s %s for %s as %s (priority %d)",
            sync_action.value,
            entity_type.value,
            entity_uuid,
            item.uuid,
            priority,
        )
        return item.uuid

    # === Single-item operations ===

    def update_item(self, uuid: str, fields: Mapping[str, Any]) -> bool:
        """Merge fields into a stored item.

        Returns:
            True if the item was updated, False if absent or on store error.

        Raises:
            InvalidQueueItemError: If a field cannot be updated.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidQueueItemError(f"Cannot update queue item fields: {sorted(unknown)}")
        if "priority" in fields:
            _check_priority(fields["priority"])
        try:
            return self._store.update_sync_queue_item(uuid, fields) > 0
        except StoreError:
            logger.exception("Failed to update queue item %s", uuid)
            return False

    def remove_item(self, uuid: str) -> bool:
        """Delete an item. Returns False if absent or on store error."""
        try:
            return self._store.remove_sync_queue_item(uuid) > 0
        except StoreError:
            logger.exception("Failed to remove queue item %s", uuid)
            return False

    def get_item(self, uuid: str) -> QueueItem | None:
        """Fetch one item decorated with its derived status.

        Returns None both when the item is absent and when the read fails.
        """
        try:
            items = self._store.get_sync_queue()
        except StoreError:
            logger.exception("Failed to read queue item %s", uuid)
            return None
        for item in items:
            if item.uuid == uuid:
                return self._decorate([item], self._clock())[0]
        return None

    def mark_as_retrying(
        self,
        uuid: str,
        next_retry: datetime | None,
        error: str | None = None,
    ) -> bool:
        """Record a failed attempt: attempts + 1, last_attempt, next_retry, error.

        The increment and the field writes are one store call.

        Returns:
            False if the item is absent or on store error.
        """
        fields = {"last_attempt": self._clock(), "next_retry": next_retry, "error": error}
        try:
            return self._store.increment_attempts(uuid, fields) > 0
        except StoreError:
            logger.exception("Failed to mark queue item %s as retrying", uuid)
            return False

    def mark_as_failed(self, uuid: str, error: str) -> bool:
        """Record an immediate non-retryable failure (derived status FAILED)."""
        return self.update_item(
            uuid, {"error": error, "last_attempt": self._clock(), "next_retry": None}
        )

    def prioritize_item(self, uuid: str, priority: int) -> bool:
        """Set one item's priority."""
        return self.update_item(uuid, {"priority": _check_priority(priority)})

    # === Views ===

    def get_items(
        self,
        type: EntityType | str | None = None,
        status: QueueItemStatus | str | None = None,
        limit: int | None = None,
        offset: int = 0,
        sort_by: str = "priority",
        sort_order: str = "desc",
    ) -> list[QueueItem]:
        """List items, filtered and sorted in memory.

        Args:
            type: Only items of this entity type.
            status: Only items with this derived status.
            limit: Maximum number of items returned.
            offset: Number of items skipped after sorting.
            sort_by: priority, timestamp or attempts.
            sort_order: asc or desc.

        Returns:
            Decorated items, or [] on store error.

        Raises:
            InvalidQueueItemError: On an unknown filter or sort option.
        """
        if sort_by not in SORT_KEYS:
            raise InvalidQueueItemError(f"sort_by must be one of {SORT_KEYS}, got {sort_by!r}")
        if sort_order not in SORT_ORDERS:
            raise InvalidQueueItemError(f"sort_order must be one of {SORT_ORDERS}, got {sort_order!r}")
        entity_type = _coerce_enum(EntityType, type, "entity type") if type is not None else None
        if status is not None:
            try:
                status = QueueItemStatus(status)
            except ValueError:
                raise InvalidQueueItemError(f"Invalid status {status!r}") from None

        try:
            items = self._load()
        except StoreError:
            logger.exception("Failed to read sync queue")
            return []

        if entity_type is not None:
            items = [item for item in items if item.type == entity_type]
        if status is not None:
            items = [item for item in items if item.status == status]
        items = self._sorted(items, sort_by, descending=sort_order == "desc")
        items = items[max(offset, 0):]
        return items[:limit] if limit is not None else items

    def get_pending_items(self, limit: int | None = None) -> list[QueueItem]:
        """Get never-attempted items, highest priority first."""
        return self.get_items(status=QueueItemStatus.PENDING, limit=limit)

    def get_ready_for_retry(self) -> list[QueueItem]:
        """Get retrying items whose backoff has elapsed."""
        now = self._clock()
        return [
            item
            for item in self.get_items(status=QueueItemStatus.RETRYING)
            if item.is_due(now)
        ]

    def next_batch(self, limit: int) -> list[QueueItem]:
        """Gather the next batch to send: pending plus due retrying items.

        Ordered by priority descending, then timestamp ascending. Items at
        max_retries or failed are never included.

        Raises:
            StoreError: If the queue cannot be read.
        """
        now = self._clock()
        items = self._decorate(self._store.get_sync_queue(), now)
        eligible = [
            item
            for item in items
            if item.status == QueueItemStatus.PENDING
            or (item.status == QueueItemStatus.RETRYING and item.is_due(now))
        ]
        return self._sorted(eligible, "priority", descending=True)[:max(limit, 0)]

    def count(self) -> int:
        """Get number of queued items (0 on store error)."""
        try:
            return self._store.count()
        except StoreError:
            logger.exception("Failed to count sync queue")
            return 0

    def get_metrics(self) -> QueueMetrics:
        """Compute aggregate counts in a single pass over the queue.

        Returns:
            QueueMetrics, all zero on store error.
        """
        metrics = QueueMetrics()
        try:
            items = self._load()
        except StoreError:
            logger.exception("Failed to compute queue metrics")
            return metrics

        total_attempts = 0
        for item in items:
            metrics.total += 1
            total_attempts += item.attempts
            metrics.by_type[item.type.value] += 1
            metrics.by_action[item.action.value] += 1
            if item.status == QueueItemStatus.PENDING:
                metrics.pending += 1
                if metrics.oldest_pending is None or item.timestamp < metrics.oldest_pending:
                    metrics.oldest_pending = item.timestamp
            elif item.status == QueueItemStatus.RETRYING:
                metrics.retrying += 1
            elif item.status == QueueItemStatus.FAILED:
                metrics.failed += 1
            else:
                metrics.max_retries += 1

        if metrics.total:
            metrics.avg_retry_attempts = total_attempts / metrics.total
        return metrics

    # === Bulk operations ===

    def _stuck_items(self) -> list[QueueItem]:
        """Items the engine will never send again: max_retries or failed."""
        try:
            return [
                item for item in self._load()
                if item.status in (QueueItemStatus.MAX_RETRIES, QueueItemStatus.FAILED)
            ]
        except StoreError:
            logger.exception("Failed to read sync queue")
            return []

    def reset_failed_items(self) -> int:
        """Re-enable every max_retries or failed item (attempts 0, no error/backoff).

        Per-item failures are skipped.

        Returns:
            Number of items reset.
        """
        reset = 0
        for item in self._stuck_items():
            fields = {"attempts": 0, "last_attempt": None, "next_retry": None, "error": None}
            if self.update_item(item.uuid, fields):
                reset += 1
        if reset:
            logger.info("Reset %d failed queue items", reset)
        return reset

    def clear_failed_items(self) -> int:
        """Remove every max_retries or failed item. Returns number removed."""
        removed = sum(1 for item in self._stuck_items() if self.remove_item(item.uuid))
        if removed:
            logger.info("Cleared %d failed queue items", removed)
        return removed

    def reprioritize_type(self, type: EntityType | str, new_priority: int) -> int:
        """Set the priority of every item of one entity type.

        Returns:
            Number of items updated.
        """
        entity_type = _coerce_enum(EntityType, type, "entity type")
        new_priority = _check_priority(new_priority)
        try:
            items = self._store.get_sync_queue()
        except StoreError:
            logger.exception("Failed to read sync queue")
            return 0
        return sum(
            1
            for item in items
            if item.type == entity_type
            and self.update_item(item.uuid, {"priority": new_priority})
        )
