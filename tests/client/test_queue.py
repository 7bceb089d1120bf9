"""Tests for the sync queue manager."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fieldsync.client.sync import (
    InvalidQueueItemError,
    MemoryQueueStore,
    QueueItemStatus,
    QueueStoreError,
    SyncQueueManager,
)
from fieldsync.core.types import EntityType, SyncAction


def broken_store() -> MagicMock:
    """Store whose every call fails."""
    store = MagicMock()
    for name in (
        "get_sync_queue",
        "add_to_sync_queue",
        "update_sync_queue_item",
        "increment_attempts",
        "remove_sync_queue_item",
        "count",
    ):
        getattr(store, name).side_effect = QueueStoreError("disk I/O error")
    return store


class TestAddItem:
    """Tests for SyncQueueManager.add_item."""

    def test_returns_distinct_ids(self, queue: SyncQueueManager) -> None:
        """Each enqueue should produce a fresh uuid."""
        first = queue.add_item("assessment", "create", "a-1", {"version": 1})
        second = queue.add_item("assessment", "create", "a-1", {"version": 1})
        assert first != second

    def test_new_item_is_pending(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """A fresh item should be pending with zero attempts."""
        item_id = queue.add_item(EntityType.RESPONSE, SyncAction.UPDATE, "r-1", {"qty": 3})

        item = queue.get_item(item_id)

        assert item is not None
        assert item.status == QueueItemStatus.PENDING
        assert item.attempts == 0
        assert item.priority == 5
        assert item.timestamp == clock.now
        assert item.last_attempt is None
        assert item.next_retry is None
        assert item.data == {"qty": 3}

    def test_accepts_enum_and_string_values(self, queue: SyncQueueManager) -> None:
        """Type and action can be given as enum members or their values."""
        item_id = queue.add_item(EntityType.ENTITY, "delete", "e-1", {})
        item = queue.get_item(item_id)
        assert item is not None
        assert item.type == EntityType.ENTITY
        assert item.action == SyncAction.DELETE

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"type": "donor"}, "entity type"),
            ({"action": "upsert"}, "action"),
            ({"entity_uuid": ""}, "entity_uuid"),
            ({"entity_uuid": "   "}, "entity_uuid"),
            ({"data": ["not", "an", "object"]}, "object"),
            ({"data": {"when": object()}}, "JSON"),
            ({"data": {"score": float("nan")}}, "JSON"),
            ({"data": {"reach": {"max": float("inf")}}}, "JSON"),
            ({"priority": "high"}, "Priority"),
            ({"priority": True}, "Priority"),
        ],
    )
    def test_rejects_invalid_arguments(
        self, queue: SyncQueueManager, kwargs: dict, message: str
    ) -> None:
        """Programmer errors should fail fast and queue nothing."""
        args = {
            "type": "assessment",
            "action": "create",
            "entity_uuid": "a-1",
            "data": {"version": 1},
        }
        args.update(kwargs)

        with pytest.raises(InvalidQueueItemError, match=message):
            queue.add_item(**args)
        assert queue.count() == 0

    def test_invalid_item_error_is_value_error(self, queue: SyncQueueManager) -> None:
        """Validation errors should be catchable as ValueError."""
        with pytest.raises(ValueError):
            queue.add_item("nope", "create", "a-1", {})

    def test_store_failure_propagates(self, clock) -> None:  # type: ignore[no-untyped-def]
        """An enqueue that cannot be persisted must not be silently lost."""
        queue = SyncQueueManager(broken_store(), clock=clock)
        with pytest.raises(QueueStoreError):
            queue.add_item("assessment", "create", "a-1", {})

    def test_payload_is_copied(self, queue: SyncQueueManager) -> None:
        """Mutating the caller's dict after enqueue should not change the item."""
        payload = {"version": 1, "notes": "ok"}
        item_id = queue.add_item("assessment", "create", "a-1", payload)
        payload["notes"] = "changed"

        item = queue.get_item(item_id)
        assert item is not None
        assert item.data["notes"] == "ok"


class TestSingleItemOperations:
    """Tests for update/remove/get and retry marking."""

    def test_update_item(self, queue: SyncQueueManager) -> None:
        """Should merge fields and report success."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        assert queue.update_item(item_id, {"priority": 9}) is True

        item = queue.get_item(item_id)
        assert item is not None
        assert item.priority == 9

    def test_update_missing_item_returns_false(self, queue: SyncQueueManager) -> None:
        """Zero rows affected should be reported as False."""
        assert queue.update_item("missing", {"priority": 1}) is False

    def test_update_unknown_field_raises(self, queue: SyncQueueManager) -> None:
        """Only mutable fields can be updated."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        with pytest.raises(InvalidQueueItemError):
            queue.update_item(item_id, {"uuid": "other"})

    def test_remove_item(self, queue: SyncQueueManager) -> None:
        """Should remove once, then report False."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        assert queue.remove_item(item_id) is True
        assert queue.remove_item(item_id) is False
        assert queue.get_item(item_id) is None

    def test_mark_as_retrying(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Should bump attempts and record the retry schedule."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        next_retry = clock.now + timedelta(seconds=2)

        assert queue.mark_as_retrying(item_id, next_retry, "timeout") is True

        item = queue.get_item(item_id)
        assert item is not None
        assert item.attempts == 1
        assert item.last_attempt == clock.now
        assert item.next_retry == next_retry
        assert item.error == "timeout"
        assert item.status == QueueItemStatus.RETRYING

    def test_mark_as_retrying_missing_item(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Should return False for an unknown uuid."""
        assert queue.mark_as_retrying("missing", clock.now) is False

    def test_mark_as_failed(self, queue: SyncQueueManager) -> None:
        """An immediate failure should derive the FAILED status."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        assert queue.mark_as_failed(item_id, "rejected") is True

        item = queue.get_item(item_id)
        assert item is not None
        assert item.status == QueueItemStatus.FAILED
        assert item.attempts == 0

    def test_prioritize_item(self, queue: SyncQueueManager) -> None:
        """Should set one item's priority."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        assert queue.prioritize_item(item_id, 10) is True
        item = queue.get_item(item_id)
        assert item is not None
        assert item.priority == 10


class TestStoreFailures:
    """Store errors are swallowed everywhere but add_item and next_batch."""

    @pytest.fixture
    def failing_queue(self, clock) -> SyncQueueManager:  # type: ignore[no-untyped-def]
        return SyncQueueManager(broken_store(), clock=clock)

    def test_reads_return_empty(self, failing_queue: SyncQueueManager) -> None:
        """Read paths should return None/[]/0 instead of raising."""
        assert failing_queue.get_item("x") is None
        assert failing_queue.get_items() == []
        assert failing_queue.get_pending_items() == []
        assert failing_queue.get_ready_for_retry() == []
        assert failing_queue.count() == 0

    def test_metrics_are_zero(self, failing_queue: SyncQueueManager) -> None:
        """Metrics should be all zero on read failure."""
        metrics = failing_queue.get_metrics()
        assert metrics.total == 0
        assert metrics.avg_retry_attempts == 0.0
        assert metrics.oldest_pending is None
        assert set(metrics.by_type.values()) == {0}

    def test_mutations_return_false(self, failing_queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Mutating paths should return False/0 instead of raising."""
        assert failing_queue.update_item("x", {"priority": 1}) is False
        assert failing_queue.remove_item("x") is False
        assert failing_queue.mark_as_retrying("x", clock.now, "boom") is False
        assert failing_queue.reset_failed_items() == 0
        assert failing_queue.clear_failed_items() == 0
        assert failing_queue.reprioritize_type("assessment", 1) == 0

    def test_next_batch_propagates(self, failing_queue: SyncQueueManager) -> None:
        """The engine's gather step must see store failures."""
        with pytest.raises(QueueStoreError):
            failing_queue.next_batch(10)


class TestGetItems:
    """Tests for filtering and sorting."""

    def test_default_sort_priority_desc(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Default order is priority descending, oldest first on ties."""
        low = queue.add_item("assessment", "create", "a-1", {}, priority=1)
        clock.advance(1)
        high_old = queue.add_item("assessment", "create", "a-2", {}, priority=9)
        clock.advance(1)
        high_new = queue.add_item("assessment", "create", "a-3", {}, priority=9)

        assert [i.uuid for i in queue.get_items()] == [high_old, high_new, low]

    def test_sort_by_timestamp_asc(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Should sort oldest first when requested."""
        ids = []
        for n in range(3):
            ids.append(queue.add_item("assessment", "create", f"a-{n}", {}, priority=n))
            clock.advance(1)

        items = queue.get_items(sort_by="timestamp", sort_order="asc")
        assert [i.uuid for i in items] == ids

    def test_sort_by_attempts_ties_fall_back_to_age(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Equal sort keys keep oldest first, even in descending order."""
        first = queue.add_item("assessment", "create", "a-1", {})
        clock.advance(1)
        second = queue.add_item("assessment", "create", "a-2", {})
        clock.advance(1)
        retried = queue.add_item("assessment", "create", "a-3", {})
        queue.update_item(retried, {"attempts": 1})

        items = queue.get_items(sort_by="attempts", sort_order="desc")
        assert [i.uuid for i in items] == [retried, first, second]

    def test_filter_by_type_and_status(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Should filter by entity type and derived status."""
        queue.add_item("assessment", "create", "a-1", {})
        response_id = queue.add_item("response", "create", "r-1", {})
        retrying_id = queue.add_item("response", "update", "r-2", {})
        queue.mark_as_retrying(retrying_id, clock.now + timedelta(seconds=5), "timeout")

        responses = queue.get_items(type="response")
        assert {i.uuid for i in responses} == {response_id, retrying_id}

        retrying = queue.get_items(status=QueueItemStatus.RETRYING)
        assert [i.uuid for i in retrying] == [retrying_id]

    def test_limit_and_offset(self, queue: SyncQueueManager) -> None:
        """Should page through the sorted list."""
        ids = [
            queue.add_item("assessment", "create", f"a-{p}", {}, priority=p)
            for p in (1, 2, 3, 4)
        ]
        page = queue.get_items(limit=2, offset=1)
        assert [i.uuid for i in page] == [ids[2], ids[1]]

    def test_invalid_sort_key(self, queue: SyncQueueManager) -> None:
        """Unknown sort keys are programmer errors."""
        with pytest.raises(InvalidQueueItemError):
            queue.get_items(sort_by="entity_uuid")


class TestPendingAndBatches:
    """Tests for pending views and batch gathering."""

    def test_get_pending_items_scenario(self, queue: SyncQueueManager) -> None:
        """Priorities [8,5,3] with limit 2 should return 8 then 5."""
        p8 = queue.add_item("assessment", "create", "a-8", {}, priority=8)
        p5 = queue.add_item("assessment", "create", "a-5", {}, priority=5)
        queue.add_item("assessment", "create", "a-3", {}, priority=3)

        pending = queue.get_pending_items(2)

        assert [i.uuid for i in pending] == [p8, p5]
        assert [i.priority for i in pending] == [8, 5]

    def test_get_pending_excludes_retrying(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Items that failed before are not pending."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        queue.mark_as_retrying(item_id, clock.now + timedelta(seconds=2), "timeout")
        assert queue.get_pending_items() == []

    def test_ready_for_retry(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Retrying items become ready once their backoff has elapsed."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        queue.mark_as_retrying(item_id, clock.now + timedelta(seconds=4), "timeout")

        assert queue.get_ready_for_retry() == []
        clock.advance(4)
        assert [i.uuid for i in queue.get_ready_for_retry()] == [item_id]

    def test_next_batch_skips_backoff_and_exhausted(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Gather takes pending and due retries only."""
        pending = queue.add_item("assessment", "create", "a-1", {}, priority=1)
        waiting = queue.add_item("assessment", "create", "a-2", {}, priority=9)
        queue.mark_as_retrying(waiting, clock.now + timedelta(seconds=8), "timeout")
        exhausted = queue.add_item("assessment", "create", "a-3", {}, priority=9)
        queue.update_item(exhausted, {"attempts": 3, "error": "gave up"})
        failed = queue.add_item("assessment", "create", "a-4", {}, priority=9)
        queue.mark_as_failed(failed, "rejected")

        assert [i.uuid for i in queue.next_batch(10)] == [pending]

        clock.advance(8)
        assert [i.uuid for i in queue.next_batch(10)] == [waiting, pending]

    def test_next_batch_cap(self, queue: SyncQueueManager) -> None:
        """Gather should never exceed the limit."""
        for n in range(5):
            queue.add_item("assessment", "create", f"a-{n}", {})
        assert len(queue.next_batch(3)) == 3
        assert queue.next_batch(0) == []


class TestMetrics:
    """Tests for SyncQueueManager.get_metrics."""

    def test_metrics_for_attempts_0_1_3(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Attempts {0,1,3} -> pending=1, retrying=1, max_retries=1, avg 4/3."""
        pending_id = queue.add_item("assessment", "create", "a-1", {})
        clock.advance(1)
        retrying_id = queue.add_item("response", "update", "r-1", {})
        queue.mark_as_retrying(retrying_id, clock.now + timedelta(seconds=2), "timeout")
        exhausted_id = queue.add_item("entity", "delete", "e-1", {})
        queue.update_item(exhausted_id, {"attempts": 3})

        metrics = queue.get_metrics()

        assert metrics.total == 3
        assert metrics.pending == 1
        assert metrics.retrying == 1
        assert metrics.max_retries == 1
        assert metrics.failed == 0
        assert metrics.avg_retry_attempts == pytest.approx((0 + 1 + 3) / 3)
        assert metrics.oldest_pending == queue.get_item(pending_id).timestamp  # type: ignore[union-attr]
        assert metrics.by_type == {"assessment": 1, "response": 1, "entity": 1}
        assert metrics.by_action == {"create": 1, "update": 1, "delete": 1}

    def test_empty_queue_metrics(self, queue: SyncQueueManager) -> None:
        """Every counter should exist and be zero."""
        metrics = queue.get_metrics().to_dict()
        assert metrics["total"] == 0
        assert metrics["oldest_pending"] is None
        assert metrics["by_type"] == {"assessment": 0, "response": 0, "entity": 0}


class TestBulkOperations:
    """Tests for reset/clear/reprioritize."""

    def test_reset_failed_items(self, queue: SyncQueueManager, clock) -> None:  # type: ignore[no-untyped-def]
        """Exhausted items return to pending with their history cleared."""
        item_id = queue.add_item("assessment", "create", "a-1", {})
        queue.update_item(
            item_id,
            {"attempts": 3, "error": "timeout", "last_attempt": clock.now, "next_retry": clock.now},
        )
        other = queue.add_item("assessment", "create", "a-2", {})

        assert queue.reset_failed_items() == 1

        item = queue.get_item(item_id)
        assert item is not None
        assert item.status == QueueItemStatus.PENDING
        assert item.attempts == 0
        assert item.error is None
        assert item.last_attempt is None
        assert item.next_retry is None
        assert queue.get_item(other) is not None

    def test_reset_tolerates_per_item_failures(self, clock) -> None:  # type: ignore[no-untyped-def]
        """One failed update should not stop the others."""
        store = MemoryQueueStore()
        queue = SyncQueueManager(store, clock=clock)
        first = queue.add_item("assessment", "create", "a-1", {})
        second = queue.add_item("assessment", "create", "a-2", {})
        for item_id in (first, second):
            queue.update_item(item_id, {"attempts": 3})

        real_update = store.update_sync_queue_item

        def flaky_update(uuid: str, fields: dict) -> int:
            if uuid == first:
                raise QueueStoreError("locked")
            return real_update(uuid, fields)

        store.update_sync_queue_item = flaky_update  # type: ignore[method-assign]

        assert queue.reset_failed_items() == 1
        assert queue.get_item(second).attempts == 0  # type: ignore[union-attr]

    def test_clear_failed_items(self, queue: SyncQueueManager) -> None:
        """Only exhausted items are removed."""
        exhausted = queue.add_item("assessment", "create", "a-1", {})
        queue.update_item(exhausted, {"attempts": 3})
        kept = queue.add_item("assessment", "create", "a-2", {})

        assert queue.clear_failed_items() == 1
        assert queue.get_item(exhausted) is None
        assert queue.get_item(kept) is not None

    def test_reprioritize_type(self, queue: SyncQueueManager) -> None:
        """Should update every item of the type and nothing else."""
        a1 = queue.add_item("assessment", "create", "a-1", {}, priority=1)
        a2 = queue.add_item("assessment", "update", "a-2", {}, priority=2)
        r1 = queue.add_item("response", "create", "r-1", {}, priority=3)

        assert queue.reprioritize_type("assessment", 7) == 2

        assert queue.get_item(a1).priority == 7  # type: ignore[union-attr]
        assert queue.get_item(a2).priority == 7  # type: ignore[union-attr]
        assert queue.get_item(r1).priority == 3  # type: ignore[union-attr]

    def test_bulk_operations_include_marked_failures(self, queue: SyncQueueManager) -> None:
        """Items marked failed are reset or cleared along with exhausted ones."""
        rejected = queue.add_item("assessment", "create", "a-1", {})
        queue.mark_as_failed(rejected, "rejected")
        exhausted = queue.add_item("assessment", "create", "a-2", {})
        queue.update_item(exhausted, {"attempts": 3})

        assert queue.reset_failed_items() == 2
        assert [i.uuid for i in queue.get_pending_items()] == [rejected, exhausted]

        queue.mark_as_failed(rejected, "rejected again")
        assert queue.clear_failed_items() == 1
        assert queue.get_item(rejected) is None
        assert queue.get_item(exhausted) is not None
