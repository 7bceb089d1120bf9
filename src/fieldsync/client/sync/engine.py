"""Sync engine: batched delivery of queued mutations.

This module provides:
- SyncEngine: Coordinator that gathers, sends and settles queue batches
- BatchClient: Protocol for the remote batch endpoint client

One sync cycle:
    1. Guard: offline or a cycle already in flight -> None, no network
    2. Gather: up to max_batch_size pending/due items (priority desc, oldest first)
    3. Empty queue -> empty SyncBatchResult, no network
    4. Dispatch the whole batch as one request
    5. Settle each verdict:
       success  -> remove
       conflict -> log for review, notify, remove
       failed   -> backoff (attempts + 1) or drop once attempts run out
    6. Transport failure (HTTP error, timeout, malformed body): every item
       gets a synthesized failed verdict and goes through step 5
    7. Items whose payload is not strict JSON (NaN, Infinity) are held back
       from the request and fail on their own

At most one cycle runs at a time. The guard is a non-blocking lock, so
overlapping triggers (timer, connectivity, enqueue, manual) become no-ops.

Threads owned by the engine:
    - periodic check (start()/stop()): syncs when online, idle, non-empty
    - retry timers: one threading.Timer per backing-off item
    - background syncs fired by add_to_queue() and by going online
destroy() stops and forgets all of them.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from fieldsync.client.api import SyncResult
from fieldsync.client.sync.connectivity import ConnectivityMonitor
from fieldsync.client.sync.retry import TRANSPORT_EXCEPTIONS, BackoffPolicy
from fieldsync.client.sync.store import StoreError
from fieldsync.client.sync.types import (
    DEFAULT_PRIORITY,
    ConflictCallback,
    ConnectivityListener,
    ConnectivityStatus,
    QueueItem,
    QueueItemStatus,
    QueueStatus,
    SyncBatchResult,
    SyncError,
)
from fieldsync.core.config import SyncSettings
from fieldsync.core.types import EntityType, SyncAction, VerdictStatus

if TYPE_CHECKING:
    from fieldsync.client.sync.conflict import ConflictLog
    from fieldsync.client.sync.queue import SyncQueueManager

logger = logging.getLogger(__name__)

BUSY_RETRY_DELAY = 1.0  # seconds


class BatchClient(Protocol):
    """Protocol for the remote batch endpoint.

    SyncClient implements this interface.
    """

    def push_batch(self, changes: list[dict[str, Any]]) -> list[SyncResult]:
        """Send changes and return per-change verdicts.

        Raises:
            APIError or httpx.HTTPError on transport failure.
        """
        ...


class SyncEngine:
    """Coordinates delivery of the sync queue to the remote endpoint.

    One engine per running client, built by the application and passed to
    whoever needs it.

    Usage:
        engine = SyncEngine(queue, client, monitor, settings)
        engine.start()  # periodic queue check
        engine.add_to_queue("assessment", "create", entity_id, payload)
        ...
        engine.destroy()
    """

    def __init__(
        self,
        queue: SyncQueueManager,
        client: BatchClient,
        monitor: ConnectivityMonitor | None = None,
        settings: SyncSettings | None = None,
        conflict_log: ConflictLog | None = None,
        on_conflict: ConflictCallback | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            queue: Queue manager (the only path to the queue store).
            client: Batch endpoint client.
            monitor: Connectivity monitor (defaults to an offline one).
            settings: Engine tunables.
            conflict_log: Where conflict verdicts are recorded.
            on_conflict: Called with (item, verdict) for every conflict.
        """
        self._queue = queue
        self._client = client
        self._monitor = monitor or ConnectivityMonitor()
        self._settings = settings or SyncSettings()
        self._conflict_log = conflict_log
        self._on_conflict = on_conflict

        if self._settings.max_attempts != queue.max_attempts:
            logger.warning(
                "Queue max_attempts (%d) differs from settings (%d); using the queue's",
                queue.max_attempts,
                self._settings.max_attempts,
            )
        self._policy = BackoffPolicy(
            max_attempts=queue.max_attempts,
            initial_backoff=self._settings.initial_backoff,
            max_backoff=self._settings.max_backoff,
            multiplier=self._settings.backoff_multiplier,
        )

        # At most one sync cycle at a time
        self._sync_lock = threading.Lock()
        # Guards timers, threads and listeners below
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._retry_timers: dict[str, threading.Timer] = {}
        self._background: set[threading.Thread] = set()
        self._listeners: list[ConnectivityListener] = []
        self._last_result: SyncBatchResult | None = None
        self._destroyed = False

        self._unsubscribe_monitor: Callable[[], None] | None = (
            self._monitor.on_connectivity_change(self._handle_connectivity_change)
        )

    # === State ===

    @property
    def is_online(self) -> bool:
        return self._monitor.is_online

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> SyncBatchResult | None:
        """Result of the most recent completed cycle."""
        return self._last_result

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def pending_retries(self) -> list[str]:
        """uuids of items with an armed retry timer."""
        with self._lock:
            return list(self._retry_timers)

    def get_connectivity_status(self) -> ConnectivityStatus:
        return self._monitor.status

    def get_queue_status(self) -> QueueStatus:
        """Summarize the queue and engine state.

        pending_items counts items the next cycle would send; failed_items
        counts items that will not be sent without operator action.
        """
        now = self._queue.now()
        items = self._queue.get_items(sort_by="timestamp", sort_order="asc")
        pending = sum(
            1
            for item in items
            if item.status in (QueueItemStatus.PENDING, QueueItemStatus.RETRYING)
            and item.is_due(now)
        )
        failed = sum(
            1
            for item in items
            if item.status in (QueueItemStatus.MAX_RETRIES, QueueItemStatus.FAILED)
        )
        return QueueStatus(
            total_items=len(items),
            pending_items=pending,
            failed_items=failed,
            oldest_item=items[0].timestamp if items else None,
            is_online=self.is_online,
            sync_in_progress=self.is_syncing,
        )

    # === Connectivity ===

    def on_connectivity_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener for online/offline transitions.

        Returns:
            A function that unregisters the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _handle_connectivity_change(self, status: ConnectivityStatus) -> None:
        with self._lock:
            if self._destroyed:
                return
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Connectivity listener failed")
        if status.is_online:
            self._sync_in_background("online")

    # === Queue admission ===

    def add_to_queue(
        self,
        type: EntityType | str,
        action: SyncAction | str,
        entity_uuid: str,
        data: Mapping[str, Any],
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Enqueue a mutation and nudge a background sync.

        Returns once the item is persisted; the sync that follows never
        blocks the caller and its failure never reaches it.

        Returns:
            The new item's uuid.

        Raises:
            InvalidQueueItemError: If any argument is invalid.
            StoreError: If the store cannot persist the item.
        """
        uuid = self._queue.add_item(type, action, entity_uuid, data, priority)
        if self._settings.auto_sync and self.is_online and not self.is_syncing:
            self._sync_in_background("enqueue")
        return uuid

    def clear_failed_items(self) -> int:
        """Remove every item at max_retries. Returns number removed."""
        return self._queue.clear_failed_items()

    def retry_failed_items(self) -> int:
        """Reset every item at max_retries and sync if online.

        Returns:
            Number of items reset.
        """
        reset = self._queue.reset_failed_items()
        if reset and self.is_online:
            self._sync_in_background("retry-failed")
        return reset

    # === Sync cycle ===

    def trigger_sync(self, max_items: int | None = None) -> SyncBatchResult | None:
        """Run one sync cycle.

        Args:
            max_items: Optional cap below max_batch_size.

        Returns:
            The cycle's result, or None if offline or a cycle is in flight.

        Raises:
            StoreError: If the queue cannot be read (sync status unknown).
        """
        if self._destroyed:
            logger.debug("Engine destroyed, skipping sync")
            return None
        if not self.is_online:
            logger.info("Offline, skipping sync")
            return None
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Sync already in progress, skipping")
            return None
        try:
            result = self._run_cycle(max_items)
        finally:
            self._sync_lock.release()
        self._last_result = result
        return result

    def _run_cycle(self, max_items: int | None) -> SyncBatchResult:
        limit = self._settings.max_batch_size
        if max_items is not None:
            limit = max(0, min(limit, max_items))

        items = self._queue.next_batch(limit)
        if not items:
            logger.debug("Sync queue empty, nothing to send")
            return SyncBatchResult.empty()

        logger.info("Syncing %d queued items", len(items))
        changes: list[dict[str, Any]] = []
        sendable: list[QueueItem] = []
        verdicts: list[SyncResult] = []
        for item in items:
            change = item.to_change()
            try:
                json.dumps(change, allow_nan=False)
            except (TypeError, ValueError) as e:
                logger.error("Item %s has a payload that cannot be sent: %s", item.uuid, e)
                verdicts.append(self._failed_verdict(item, f"payload is not valid JSON: {e}"))
                continue
            changes.append(change)
            sendable.append(item)

        if sendable:
            try:
                verdicts.extend(self._client.push_batch(changes))
            except TRANSPORT_EXCEPTIONS as e:
                message = str(e) or type(e).__name__
                logger.warning("Batch sync failed for %d items: %s", len(sendable), message)
                verdicts.extend(self._failed_verdict(item, message) for item in sendable)

        result = self._settle(items, verdicts)
        logger.info(
            "Sync finished: %d successful, %d conflicts, %d failed",
            len(result.successful),
            len(result.conflicts),
            len(result.failed),
        )
        return result

    @staticmethod
    def _failed_verdict(item: QueueItem, message: str) -> SyncResult:
        return SyncResult(
            offline_id=item.uuid, server_id="", status=VerdictStatus.FAILED, message=message
        )

    def _settle(self, items: list[QueueItem], verdicts: list[SyncResult]) -> SyncBatchResult:
        """Apply verdicts to the batch; unmatched items count as failed."""
        batch = {item.uuid: item for item in items}
        settled: set[str] = set()
        result = SyncBatchResult(total_processed=len(items))

        for verdict in verdicts:
            item = batch.get(verdict.offline_id)
            if item is None:
                logger.warning("Ignoring verdict for unknown item %s", verdict.offline_id)
                continue
            if verdict.offline_id in settled:
                logger.warning("Ignoring repeated verdict for item %s", verdict.offline_id)
                continue
            settled.add(verdict.offline_id)
            self._apply_verdict(item, verdict, result)

        for item in items:
            if item.uuid not in settled:
                self._apply_verdict(item, self._failed_verdict(item, "no verdict returned"), result)
        return result

    def _apply_verdict(self, item: QueueItem, verdict: SyncResult, result: SyncBatchResult) -> None:
        if verdict.status == VerdictStatus.SUCCESS:
            self._cancel_retry(item.uuid)
            if not self._queue.remove_item(item.uuid):
                logger.warning("Synced item %s could not be removed from the queue", item.uuid)
            result.successful.append(verdict)
        elif verdict.status == VerdictStatus.CONFLICT:
            self._handle_conflict(item, verdict, result)
        else:
            self._handle_failure(item, verdict, result)

    def _handle_conflict(self, item: QueueItem, verdict: SyncResult, result: SyncBatchResult) -> None:
        if self._conflict_log is not None:
            try:
                self._conflict_log.record(item, verdict)
            except StoreError as e:
                logger.exception("Could not record conflict for item %s", item.uuid)
                failed = SyncResult(
                    offline_id=verdict.offline_id,
                    server_id=verdict.server_id,
                    status=VerdictStatus.FAILED,
                    message=f"conflict not recorded: {e}",
                    conflict_data=verdict.conflict_data,
                )
                self._handle_failure(item, failed, result)
                return

        logger.warning(
            "Conflict on %s %s (item %s): %s",
            item.type.value,
            item.entity_uuid,
            item.uuid,
            verdict.message or "no message",
        )
        if self._on_conflict is not None:
            try:
                self._on_conflict(item, verdict)
            except Exception:
                logger.exception("Conflict callback failed for item %s", item.uuid)

        self._cancel_retry(item.uuid)
        self._queue.remove_item(item.uuid)
        result.conflicts.append(verdict)

    def _handle_failure(self, item: QueueItem, verdict: SyncResult, result: SyncBatchResult) -> None:
        message = verdict.message or "sync failed"
        result.failed.append(verdict)

        if self._policy.is_exhausted(item.attempts):
            self._cancel_retry(item.uuid)
            if self._settings.keep_exhausted:
                logger.error(
                    "Item %s failed %d times, keeping it for operator reset: %s",
                    item.uuid,
                    item.attempts + 1,
                    message,
                )
                self._queue.mark_as_retrying(item.uuid, None, message)
            else:
                logger.error(
                    "Dropping item %s after %d attempts: %s",
                    item.uuid,
                    item.attempts + 1,
                    message,
                )
                self._queue.remove_item(item.uuid)
            return

        delay = self._policy.delay_for(item.attempts)
        next_retry = self._policy.next_retry_at(item.attempts, self._queue.now())
        if self._queue.mark_as_retrying(item.uuid, next_retry, message):
            logger.info("Retrying item %s in %.0fs: %s", item.uuid, delay, message)
        else:
            # Attempt not persisted; the timer still paces the next try
            logger.warning(
                "Could not record failed attempt for item %s, retrying in %.0fs: %s",
                item.uuid,
                delay,
                message,
            )
        self._schedule_retry(item.uuid, delay)

    # === Retry timers ===

    def _schedule_retry(self, uuid: str, delay: float) -> None:
        with self._lock:
            if self._destroyed:
                return
            previous = self._retry_timers.pop(uuid, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(delay, self._on_retry_due, args=(uuid,))
            timer.daemon = True
            self._retry_timers[uuid] = timer
            timer.start()

    def _cancel_retry(self, uuid: str) -> None:
        with self._lock:
            timer = self._retry_timers.pop(uuid, None)
        if timer is not None:
            timer.cancel()

    def _on_retry_due(self, uuid: str) -> None:
        with self._lock:
            if self._retry_timers.get(uuid) is threading.current_thread():
                del self._retry_timers[uuid]
            if self._destroyed:
                return
        try:
            result = self.trigger_sync()
        except Exception:
            logger.exception("Scheduled retry sync failed")
            return
        if result is None and self.is_online and self.is_syncing:
            # The in-flight cycle may have gathered its batch before this item was due
            self._schedule_retry(uuid, BUSY_RETRY_DELAY)

    # === Background work ===

    def _sync_in_background(self, reason: str) -> None:
        """Fire-and-forget sync cycle."""
        with self._lock:
            if self._destroyed:
                return
            thread = threading.Thread(
                target=self._background_sync,
                args=(reason,),
                name=f"SyncEngine-{reason}",
                daemon=True,
            )
            self._background.add(thread)
        thread.start()

    def _background_sync(self, reason: str) -> None:
        try:
            self.trigger_sync()
        except Exception:
            logger.exception("Background sync (%s) failed", reason)
        finally:
            with self._lock:
                self._background.discard(threading.current_thread())

    def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait for background syncs started so far to finish."""
        with self._lock:
            threads = [t for t in self._background if t is not threading.current_thread()]
        for thread in threads:
            thread.join(timeout=timeout)

    def start(self) -> None:
        """Start the periodic queue check thread.

        Raises:
            SyncError: If the engine has been destroyed.
        """
        with self._lock:
            if self._destroyed:
                raise SyncError("Engine has been destroyed")
            if self.is_running:
                logger.warning("Sync engine already running")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="SyncEngine",
                daemon=True,
            )
            self._thread.start()
        logger.info("Sync engine started (interval=%.0fs)", self._settings.sync_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the periodic queue check thread."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        """Periodic check loop."""
        while not self._stop_event.wait(self._settings.sync_interval):
            try:
                if self.is_online and not self.is_syncing and self._queue.count() > 0:
                    self.trigger_sync()
            except Exception:
                logger.exception("Periodic sync check failed")

    def destroy(self) -> None:
        """Stop all engine threads and timers and detach from the monitor.

        Safe to call more than once.
        """
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()
            self._listeners.clear()
            unsubscribe, self._unsubscribe_monitor = self._unsubscribe_monitor, None

        for timer in timers:
            timer.cancel()
        if unsubscribe is not None:
            unsubscribe()
        self.stop()
        self.wait_idle()
        logger.debug("Sync engine destroyed")
