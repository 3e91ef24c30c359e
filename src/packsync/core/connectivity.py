"""Connectivity tracking and background wake-ups for packsync.

- ConnectivitySignal: the online/offline state, with callbacks fired on
  transitions only
- ConnectivityMonitor: daemon thread that probes the store and feeds the
  signal
- BackgroundSyncTrigger: daemon thread that periodically invokes the same
  draining entry point as a reconnect, so queued edits flush even when no
  connectivity transition is observed (e.g. after the app was reopened)

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ConnectivitySignal:
    """Reports online/offline transitions to subscribers."""

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        """Register a callback fired with the new state on each transition."""
        with self._lock:
            self._callbacks.append(callback)

    def set_online(self, online: bool) -> None:
        """Update the state; subscribers are notified only if it changed."""
        with self._lock:
            if online == self._online:
                return
            self._online = online
            callbacks = list(self._callbacks)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for callback in callbacks:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Connectivity callback failed: {e}")


class _PeriodicThread:
    """Daemon thread running ``tick`` every ``interval`` seconds until stopped."""

    name = "packsync-periodic"

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> None:
        raise NotImplementedError

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        logger.info(f"{self.name} started (interval={self.interval:.0f}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


class ConnectivityMonitor(_PeriodicThread):
    """Probes the authoritative store and feeds a ConnectivitySignal."""

    name = "connectivity-monitor"

    def __init__(
        self,
        signal: ConnectivitySignal,
        probe: Callable[[], bool],
        interval: float = 15.0,
    ) -> None:
        """Initialize monitor.

        Args:
            signal: Signal to update
            probe: Callable returning True when the store is reachable
            interval: Seconds between probes
        """
        super().__init__(interval)
        self.signal = signal
        self.probe = probe

    def tick(self) -> None:
        try:
            reachable = bool(self.probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            reachable = False
        self.signal.set_online(reachable)


class BackgroundSyncTrigger(_PeriodicThread):
    """Periodically wakes the sync driver for every packing list."""

    name = "background-sync"

    def __init__(self, trigger_all: Callable[[], object], interval: float = 60.0) -> None:
        """Initialize trigger.

        Args:
            trigger_all: Draining entry point (SyncDriver.trigger_all)
            interval: Seconds between wake-ups
        """
        super().__init__(interval)
        self.trigger_all = trigger_all

    def tick(self) -> None:
        self.trigger_all()
