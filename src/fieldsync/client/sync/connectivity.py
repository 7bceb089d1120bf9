"""Connectivity tracking for the sync engine.

This module provides:
- ConnectivityMonitor: Current online/offline belief plus transition events

Two signal sources feed the monitor:
    - set_online(): explicit platform/network events
    - check(): a health probe against the batch endpoint, run on demand
      or periodically by the background thread (start()/stop())

Listeners fire exactly once per transition, never for a repeated state.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from fieldsync.client.sync.types import ConnectivityListener, ConnectivityStatus

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 15.0  # seconds


class ConnectivityMonitor:
    """Tracks whether the remote endpoint is reachable.

    Usage:
        monitor = ConnectivityMonitor(probe=client.health_check)
        unsubscribe = monitor.on_connectivity_change(print)
        monitor.start()
        ...
        unsubscribe()
        monitor.stop()
    """

    def __init__(
        self,
        probe: Callable[[], bool] | None = None,
        initial_online: bool = False,
        interval: float = DEFAULT_CHECK_INTERVAL,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Returns True when the endpoint is reachable.
            initial_online: Belief before the first signal arrives.
            interval: Seconds between background probes.
        """
        self._probe = probe
        self._interval = interval
        self._lock = threading.RLock()
        self._status = ConnectivityStatus(is_online=initial_online, checked_at=datetime.now(UTC))
        self._listeners: list[ConnectivityListener] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def status(self) -> ConnectivityStatus:
        """Get a copy of the current status."""
        with self._lock:
            return ConnectivityStatus(
                is_online=self._status.is_online,
                connection_type=self._status.connection_type,
                checked_at=self._status.checked_at,
            )

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._status.is_online

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def on_connectivity_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener for online/offline transitions.

        Returns:
            A function that unregisters the listener. Calling it more than
            once is harmless.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, is_online: bool, connection_type: str | None = None) -> bool:
        """Apply a connectivity signal.

        Args:
            is_online: Whether the network is reachable.
            connection_type: Optional transport metadata (wifi, cellular...).

        Returns:
            True if this signal was a transition.
        """
        with self._lock:
            changed = self._status.is_online != is_online
            self._status = ConnectivityStatus(
                is_online=is_online,
                connection_type=connection_type or self._status.connection_type,
                checked_at=datetime.now(UTC),
            )
            snapshot = self.status
            listeners = list(self._listeners) if changed else []

        if changed:
            logger.info("Connectivity changed: %s", "online" if is_online else "offline")
        # Notify outside the lock so listeners may call back into the monitor
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Connectivity listener failed")
        return changed

    def check(self) -> bool:
        """Probe the endpoint once and apply the result.

        Returns:
            The new online state (unchanged if no probe is configured).
        """
        if self._probe is None:
            return self.is_online
        try:
            online = bool(self._probe())
        except Exception as e:
            logger.debug("Connectivity probe failed: %s", e)
            online = False
        self.set_online(online)
        return online

    # === Background probing ===

    def start(self) -> None:
        """Start the background probe thread."""
        if self._probe is None:
            raise ValueError("Cannot start a monitor without a probe")
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="ConnectivityMonitor",
                daemon=True,
            )
            self._thread.start()
        logger.info("Connectivity monitor started (interval=%.0fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background probe thread."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._interval)
