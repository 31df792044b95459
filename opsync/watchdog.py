"""Resets a sync cycle that has been ``syncing`` for too long.

A crashed or hung cycle would otherwise leave the persisted status at
``syncing`` and block every later cycle on the device.
"""

import logging
import threading
from typing import Optional

from opsync.status import SyncStatusTracker
from opsync.types import SyncState, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
DEFAULT_INTERVAL = 10.0
TIMEOUT_MESSAGE = "Sync timeout (client-side safety reset)"


class StuckCycleWatchdog:
    def __init__(self, tracker: SyncStatusTracker, timeout: float = DEFAULT_TIMEOUT):
        self.tracker = tracker
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self, now: Optional[int] = None) -> bool:
        """Force ``error`` if the active cycle started more than ``timeout`` ago.

        Args:
            now: Current time in epoch milliseconds (defaults to the clock)

        Returns:
            True if a cycle was reset.
        """
        status = self.tracker.snapshot()
        if status.status != SyncState.SYNCING:
            return False
        if status.started_at is None:
            # No start time recorded: cannot age it, reset it
            return self.tracker.force_error(TIMEOUT_MESSAGE)
        now = now if now is not None else now_ms()
        elapsed = (now - status.started_at) / 1000.0
        if elapsed <= self.timeout:
            return False
        logger.warning(f"Sync has been running for {elapsed:.0f}s, resetting")
        return self.tracker.force_error(TIMEOUT_MESSAGE, only_if_started_at=status.started_at)

    def start(self, interval: float = DEFAULT_INTERVAL) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval,), name="opsync-watchdog", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.check()
            except Exception as e:
                logger.error(f"Watchdog check failed: {e}")
