"""Observer interface for sync progress.

Listeners are plain callables receiving one event object. A listener that
raises is logged and does not affect the cycle or other listeners.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from opsync.types import PendingCounts, SyncResult, SyncState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    status: SyncState
    error: Optional[str] = None


@dataclass(frozen=True)
class PullProgress:
    pulled: int


@dataclass(frozen=True)
class SyncCompleted:
    result: SyncResult


@dataclass(frozen=True)
class SyncFailed:
    error: str


SyncEvent = Union[StatusChanged, PullProgress, SyncCompleted, SyncFailed]
Listener = Callable[[SyncEvent], None]


class EventBus:
    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Sync listener {listener!r} failed on {type(event).__name__}: {e}")


class PendingCounter:
    """Keeps a PendingCounts badge fresh by re-querying after relevant events."""

    def __init__(self, engine):
        self._engine = engine
        self.counts = PendingCounts()
        self._unsubscribe = engine.subscribe(self._on_event)

    def refresh(self) -> PendingCounts:
        self.counts = self._engine.get_pending_counts()
        return self.counts

    def _on_event(self, event: SyncEvent) -> None:
        if isinstance(event, (SyncCompleted, SyncFailed)):
            self.refresh()
        elif isinstance(event, PullProgress):
            self.counts = PendingCounts(
                push=self.counts.push, pull=max(0, self.counts.pull - event.pulled)
            )

    def close(self) -> None:
        self._unsubscribe()
