"""Shared configuration classes for fieldsync.

This module defines the connection settings for the remote batch endpoint
and the tunables of the offline sync engine.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

BATCH_PATH = "/api/v1/sync/batch"
HEALTH_PATH = "/health"


@dataclass
class ServerConfig:
    """Configuration for connecting to a FieldSync batch endpoint.

    Attributes:
        server_url: Base URL of the server (e.g., "https://sync.example.org").
        token: Bearer token identifying the field device.
        timeout: Per-request timeout in seconds. Requests never hang longer.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def batch_url(self) -> str:
        """Get the absolute URL of the batch sync endpoint."""
        return f"{self.server_url}{BATCH_PATH}"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncSettings:
    """Tunables for the sync engine and queue manager.

    Attributes:
        max_attempts: Failures after which an item is given up on.
        max_batch_size: Upper bound on items sent in one sync cycle.
        initial_backoff: Delay in seconds before the first retry.
        max_backoff: Cap on the retry delay in seconds.
        backoff_multiplier: Growth factor per attempt.
        sync_interval: Seconds between periodic queue checks.
        connectivity_interval: Seconds between connectivity probes.
        keep_exhausted: Keep items that ran out of attempts (for operator
            reset) instead of dropping them.
        auto_sync: Trigger a background sync after each enqueue.
    """

    max_attempts: int = 3
    max_batch_size: int = 100
    initial_backoff: float = 2.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0
    sync_interval: float = 30.0
    connectivity_interval: float = 15.0
    keep_exhausted: bool = False
    auto_sync: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {self.max_batch_size}")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("Backoff delays must not be negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SyncSettings:
        """Build settings from a config mapping, ignoring unknown keys."""
        values: dict[str, Any] = {}
        for name in (f.name for f in fields(cls)):
            if name not in data:
                continue
            default = getattr(cls, name)
            raw = data[name]
            if isinstance(default, bool):
                values[name] = raw if isinstance(raw, bool) else str(raw).lower() in ("1", "true", "yes")
            else:
                values[name] = type(default)(raw)
        return cls(**values)
