"""Shared fixtures for sync client tests."""

from __future__ import annotations

import json
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from fieldsync.client.sync import MemoryQueueStore, SyncQueueManager


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_verdicts(
    status: str = "success",
    **extra: Any,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build an httpx_mock callback answering every change with `status`."""

    def callback(request: httpx.Request) -> httpx.Response:
        changes = json.loads(request.content)["changes"]
        return httpx.Response(
            200,
            json=[
                {
                    "offlineId": change["offlineId"],
                    "serverId": f"srv-{change['entityUuid']}",
                    "status": status,
                    **extra,
                }
                for change in changes
            ],
        )

    return callback


@pytest.fixture
def verdicts() -> Callable[..., Callable[[httpx.Request], httpx.Response]]:
    """Factory of batch endpoint callbacks (see make_verdicts)."""
    return make_verdicts


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at a fixed UTC instant."""
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def store() -> Generator[MemoryQueueStore, None, None]:
    """In-memory queue store."""
    memory_store = MemoryQueueStore()
    yield memory_store
    memory_store.close()


@pytest.fixture
def queue(store: MemoryQueueStore, clock: FakeClock) -> SyncQueueManager:
    """Queue manager on the fake clock."""
    return SyncQueueManager(store, clock=clock)
