"""Pytest fixtures for integration tests.

This module provides fixtures for end-to-end testing of the sync engine
against the reference batch endpoint running in a real uvicorn server.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import pytest
import uvicorn

from fieldsync.client.api import SyncClient
from fieldsync.client.sync import (
    ConflictLog,
    ConnectivityMonitor,
    SQLiteQueueStore,
    SyncEngine,
    SyncQueueManager,
)
from fieldsync.core.config import ServerConfig, SyncSettings
from fieldsync.server.app import create_app
from fieldsync.server.records import RecordRegistry

TOKEN = "integration-device-token"


@dataclass
class TestServer:
    """Container for test server resources."""

    registry: RecordRegistry
    url: str


@dataclass
class FieldDevice:
    """A simulated field device: queue, client, monitor and engine."""

    name: str
    store: SQLiteQueueStore
    queue: SyncQueueManager
    client: SyncClient
    monitor: ConnectivityMonitor
    conflicts: ConflictLog
    engine: SyncEngine

    def go_online(self) -> bool:
        """Probe the server, as the background monitor would."""
        return self.monitor.check()

    def close(self) -> None:
        self.engine.destroy()
        self.client.close()
        self.conflicts.close()
        self.store.close()


class UvicornTestServer:
    """Uvicorn server running in a background thread for testing."""

    def __init__(self, app: Any, host: str = "127.0.0.1") -> None:
        self.app = app
        self.host = host
        self.port = 0
        self.server: uvicorn.Server | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> int:
        """Start the server and return the port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((self.host, 0))
            self.port = s.getsockname()[1]

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self.server = uvicorn.Server(config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)
        self.thread.start()
        self._wait_for_ready()
        return self.port

    def _wait_for_ready(self, timeout: float = 5.0) -> None:
        """Wait for the server to be ready to accept connections."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                response = httpx.get(f"http://{self.host}:{self.port}/health")
                if response.status_code == 200:
                    return
            except httpx.HTTPError:
                pass
            time.sleep(0.05)
        raise RuntimeError("Server failed to start in time")

    def stop(self) -> None:
        """Stop the server."""
        if self.server:
            self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=5)


@pytest.fixture
def unreachable_url() -> str:
    """URL of a local port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}"


@pytest.fixture
def test_server() -> Generator[TestServer, None, None]:
    """Start the reference endpoint with an empty registry."""
    registry = RecordRegistry()
    server = UvicornTestServer(create_app(registry, token=TOKEN))
    port = server.start()

    yield TestServer(registry=registry, url=f"http://127.0.0.1:{port}")

    server.stop()


@pytest.fixture
def device_factory(
    tmp_path: Path, test_server: TestServer
) -> Generator[Callable[..., FieldDevice], None, None]:
    """Factory fixture to create field devices talking to the test server."""
    devices: list[FieldDevice] = []

    def _create(
        name: str = "device",
        settings: SyncSettings | None = None,
        server_url: str | None = None,
        token: str = TOKEN,
        encryption_key: bytes | None = None,
    ) -> FieldDevice:
        store = SQLiteQueueStore(tmp_path / name / "queue.db", encryption_key=encryption_key)
        queue = SyncQueueManager(store)
        client = SyncClient(ServerConfig(server_url or test_server.url, token, timeout=5.0))
        monitor = ConnectivityMonitor(probe=client.health_check)
        conflicts = ConflictLog(tmp_path / name / "conflicts.db")
        engine = SyncEngine(
            queue,
            client,
            monitor,
            settings or SyncSettings(initial_backoff=0.05),
            conflict_log=conflicts,
        )
        device = FieldDevice(name, store, queue, client, monitor, conflicts, engine)
        devices.append(device)
        return device

    yield _create

    for device in devices:
        device.close()
