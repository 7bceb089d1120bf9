"""Retry policy with exponential backoff keyed to attempt count.

This module provides:
- BackoffPolicy: Deterministic retry schedule for failed queue items
- TRANSPORT_EXCEPTIONS: Errors that fail a whole batch

The delay depends only on how many attempts an item has already made,
never on wall-clock time elapsed, so retry timing is reproducible:

    attempts=0 -> 2s, attempts=1 -> 4s, attempts=2 -> 8s ... capped at 60s
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from fieldsync.client.api import APIError
from fieldsync.core.config import SyncSettings

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 2.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Errors meaning "the batch never got a usable answer"
TRANSPORT_EXCEPTIONS: tuple[type[Exception], ...] = (
    APIError,
    httpx.HTTPError,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule for queue items.

    Attributes:
        max_attempts: Failures after which an item is given up on.
        initial_backoff: Delay in seconds after the first failure.
        max_backoff: Cap on any delay.
        multiplier: Growth factor per prior attempt.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> BackoffPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            initial_backoff=settings.initial_backoff,
            max_backoff=settings.max_backoff,
            multiplier=settings.backoff_multiplier,
        )

    def delay_for(self, attempts: int) -> float:
        """Get the retry delay for an item that has made `attempts` attempts.

        Args:
            attempts: Attempts recorded before the failure being handled.

        Returns:
            Delay in seconds: initial * multiplier ** attempts, capped.
        """
        return min(self.initial_backoff * self.multiplier ** max(attempts, 0), self.max_backoff)

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        """Get the earliest time an item may be retried."""
        return now + timedelta(seconds=self.delay_for(attempts))

    def is_exhausted(self, attempts: int) -> bool:
        """Check whether one more failure uses up the item's attempts.

        Args:
            attempts: Attempts recorded before the failure being handled.
        """
        return attempts + 1 >= self.max_attempts
