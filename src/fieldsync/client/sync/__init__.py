"""Offline sync queue and engine.

Architecture:
    add_to_queue → SyncQueueManager → QueueStore
                          ↑
    trigger ──────→ SyncEngine ──→ SyncClient ──→ batch endpoint
    (timer, online,       │
     enqueue, manual)     └──→ ConflictLog (conflict verdicts)

Components:
- **QueueStore**: Durable queue persistence (SQLiteQueueStore, MemoryQueueStore)
- **SyncQueueManager**: CRUD, derived status, metrics, bulk reset/reprioritize
- **SyncEngine**: Guarded batch cycles, verdict handling, retry timers
- **BackoffPolicy**: Attempt-keyed exponential backoff
- **ConnectivityMonitor**: Online/offline belief and transition events
- **ConflictLog**: Conflicts handed off for operator review
"""

from fieldsync.client.sync.conflict import (
    ConflictLog,
    ConflictLogError,
    ConflictRecord,
    ConflictStats,
)
from fieldsync.client.sync.connectivity import ConnectivityMonitor
from fieldsync.client.sync.engine import BatchClient, SyncEngine
from fieldsync.client.sync.queue import SyncQueueManager, utc_now
from fieldsync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    TRANSPORT_EXCEPTIONS,
    BackoffPolicy,
)
from fieldsync.client.sync.store import (
    DuplicateItemError,
    MemoryQueueStore,
    QueueStore,
    QueueStoreError,
    SQLiteQueueStore,
    StoreError,
)
from fieldsync.client.sync.types import (
    DEFAULT_PRIORITY,
    ConflictCallback,
    ConnectivityListener,
    ConnectivityStatus,
    InvalidQueueItemError,
    QueueItem,
    QueueItemStatus,
    QueueMetrics,
    QueueStatus,
    SyncBatchResult,
    SyncError,
    derive_status,
)

__all__ = [
    # Queue
    "DEFAULT_PRIORITY",
    "QueueItem",
    "QueueItemStatus",
    "QueueMetrics",
    "SyncQueueManager",
    "derive_status",
    "utc_now",
    # Store
    "DuplicateItemError",
    "MemoryQueueStore",
    "QueueStore",
    "QueueStoreError",
    "SQLiteQueueStore",
    "StoreError",
    # Engine
    "BatchClient",
    "QueueStatus",
    "SyncBatchResult",
    "SyncEngine",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "TRANSPORT_EXCEPTIONS",
    "BackoffPolicy",
    # Connectivity
    "ConnectivityListener",
    "ConnectivityMonitor",
    "ConnectivityStatus",
    # Conflicts
    "ConflictCallback",
    "ConflictLog",
    "ConflictLogError",
    "ConflictRecord",
    "ConflictStats",
    # Errors
    "InvalidQueueItemError",
    "SyncError",
]
