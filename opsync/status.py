"""Device-wide sync status, persisted in the local settings table.

The tracker is the only writer of the status fields. ``try_begin`` is the
single entry point into the ``syncing`` state. Its check and write run in one
immediate SQLite transaction under a thread lock, so at most one cycle runs
per device even when several processes share the database file.
"""

import logging
import threading
from typing import Optional

from opsync.events import EventBus, StatusChanged
from opsync.types import (
    META_LAST_ERROR,
    META_LAST_SYNC,
    META_STARTED_AT,
    META_STATUS,
    SyncState,
    SyncStatus,
    now_ms,
)

logger = logging.getLogger(__name__)


class SyncStatusTracker:
    def __init__(self, log, events: Optional[EventBus] = None):
        self._log = log
        self._lock = threading.Lock()
        self.events = events or EventBus()

    def snapshot(self) -> SyncStatus:
        raw = self._log.get_meta(META_STATUS)
        try:
            state = SyncState(raw) if raw else SyncState.IDLE
        except ValueError:
            logger.warning(f"Unknown stored sync status {raw!r}, treating as idle")
            state = SyncState.IDLE
        started = self._log.get_meta(META_STARTED_AT)
        last_sync = self._log.get_meta(META_LAST_SYNC)
        return SyncStatus(
            status=state,
            started_at=int(started) if started else None,
            last_error=self._log.get_meta(META_LAST_ERROR),
            last_sync_at=int(last_sync) if last_sync else None,
        )

    def is_syncing(self) -> bool:
        return self.snapshot().status == SyncState.SYNCING

    def try_begin(self) -> bool:
        """Move to ``syncing`` unless a cycle is already active."""
        with self._lock:
            claimed = self._log.set_meta_if(
                [META_STATUS],
                lambda current: current[META_STATUS] != SyncState.SYNCING.value,
                {
                    META_STATUS: SyncState.SYNCING.value,
                    META_STARTED_AT: str(now_ms()),
                    META_LAST_ERROR: None,
                },
            )
        if not claimed:
            return False
        self.events.emit(StatusChanged(SyncState.SYNCING))
        return True

    def finish(self, state: SyncState, error: Optional[str] = None) -> None:
        """Leave ``syncing`` for ``state`` and record the cycle's completion."""
        if state == SyncState.SYNCING:
            raise ValueError("finish() needs a terminal state")
        with self._lock:
            self._log.set_meta_many(
                {
                    META_STATUS: state.value,
                    META_STARTED_AT: None,
                    META_LAST_ERROR: error,
                    META_LAST_SYNC: str(now_ms()),
                }
            )
        if error:
            logger.warning(f"Sync finished {state.value}: {error}")
        self.events.emit(StatusChanged(state, error))

    def force_error(self, error: str, only_if_started_at: Optional[int] = None) -> bool:
        """Abort a cycle from outside (watchdog).

        With ``only_if_started_at`` the reset only happens if that exact cycle
        is still the active one, so a cycle that finished or restarted in the
        meantime is left alone.
        """

        def still_active(current):
            if current[META_STATUS] != SyncState.SYNCING.value:
                return False
            return only_if_started_at is None or current[META_STARTED_AT] == str(only_if_started_at)

        with self._lock:
            forced = self._log.set_meta_if(
                [META_STATUS, META_STARTED_AT],
                still_active,
                {
                    META_STATUS: SyncState.ERROR.value,
                    META_STARTED_AT: None,
                    META_LAST_ERROR: error,
                },
            )
        if not forced:
            return False
        logger.error(f"Sync forced to error: {error}")
        self.events.emit(StatusChanged(SyncState.ERROR, error))
        return True
