"""Sync engine: moves operations between the local log and a remote store.

``push()``, ``pull()`` and ``sync()`` are guarded entry points for callers
outside a global cycle: each claims the device-wide ``syncing`` state, turns
failures into a status and never raises for network or store errors.
``push_pending()`` and ``pull_remote()`` are the unguarded building blocks
the orchestrator runs inside its own cycle; they raise.
"""

import logging
import sqlite3
from typing import Callable, Optional, Set, Tuple

from opsync.crypto import KeyManager, SyncKey, open_operation, seal_operation
from opsync.errors import SyncError, SyncInProgressError, UndecryptableOperation
from opsync.events import EventBus, Listener, PullProgress, SyncCompleted, SyncFailed
from opsync.remote.base import DEFAULT_PULL_LIMIT, RemoteStore
from opsync.status import SyncStatusTracker
from opsync.storage import LocalOperationLog
from opsync.types import PendingCounts, SyncResult, SyncState

logger = logging.getLogger(__name__)

PUSH_BATCH_SIZE = 50
MAX_PULL_LOOPS = 100


class SyncEngine:
    """Push/pull of encrypted operations for one device.

    Args:
        log: The device's LocalOperationLog.
        store: Any RemoteStore.
        keys: KeyManager holding the shared sync key.
        tracker: Status tracker; one is created over ``log`` if omitted.
    """

    def __init__(
        self,
        log: LocalOperationLog,
        store: RemoteStore,
        keys: KeyManager,
        tracker: Optional[SyncStatusTracker] = None,
        push_batch_size: int = PUSH_BATCH_SIZE,
        pull_limit: int = DEFAULT_PULL_LIMIT,
        max_pull_loops: int = MAX_PULL_LOOPS,
    ):
        self.log = log
        self.store = store
        self.keys = keys
        self.tracker = tracker or SyncStatusTracker(log)
        self.events: EventBus = self.tracker.events
        self.push_batch_size = push_batch_size
        self.pull_limit = pull_limit
        self.max_pull_loops = max_pull_loops
        keys.add_rotation_listener(self._on_key_rotated)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # === Guarded entry points ===

    def push(self) -> Optional[SyncResult]:
        """Push pending operations. Returns None if a cycle is already active."""

        def work(result: SyncResult):
            result.pushed = self.push_pending()

        return self._guarded(work)

    def pull(self) -> Optional[SyncResult]:
        """Pull and apply remote operations. Returns None if a cycle is already active."""

        def work(result: SyncResult):
            result.pulled, result.skipped = self.pull_remote()

        return self._guarded(work)

    def sync(self) -> Optional[SyncResult]:
        """Push, then pull, as one cycle."""

        def work(result: SyncResult):
            result.pushed = self.push_pending()
            result.pulled, result.skipped = self.pull_remote()

        return self._guarded(work)

    def _guarded(self, work: Callable[[SyncResult], None]) -> Optional[SyncResult]:
        if not self.tracker.try_begin():
            logger.info("Sync already in progress, skipping")
            return None

        result = SyncResult()
        try:
            work(result)
        except (SyncError, sqlite3.Error) as e:
            logger.warning(f"Sync failed: {e}")
            result.errors.append(str(e))
        except BaseException as e:
            self.tracker.finish(SyncState.ERROR, f"Unexpected error: {e}")
            raise

        if result.success:
            self.tracker.finish(SyncState.IDLE)
            self.events.emit(SyncCompleted(result))
        else:
            error = "; ".join(result.errors)
            self.tracker.finish(SyncState.ERROR, error)
            self.events.emit(SyncFailed(error))
        return result

    # === Building blocks ===

    def push_pending(self) -> int:
        """Seal and push every pending operation in batches.

        Each batch is marked synced only after the store acknowledges it.
        When the store's sequence moved by exactly the number of operations
        just appended, nothing foreign was interleaved and the pull cursor is
        moved past our own writes.

        Returns:
            Number of operations acknowledged.
        """
        pending = self.log.pending_count()
        if pending == 0:
            return 0

        key = self.keys.require()
        client_id = self.log.client_id
        pushed = 0
        while True:
            batch = self.log.pending_operations(limit=self.push_batch_size)
            if not batch:
                break
            sealed = [seal_operation(op, key) for op in batch]
            cursor_before = self.log.get_cursor()
            ack = self.store.push(sealed, client_id=client_id)
            self.log.mark_synced([op.id for op in batch])
            pushed += len(batch)
            if ack.accepted == len(batch) and ack.cursor == cursor_before + len(batch):
                self.log.set_cursor(ack.cursor)
            logger.debug(f"Pushed batch of {len(batch)}, store cursor {ack.cursor}")
            if len(batch) < self.push_batch_size:
                break

        logger.info(f"Pushed {pushed} operations")
        return pushed

    def pull_remote(self) -> Tuple[int, int]:
        """Pull, decrypt and apply remote operations until caught up.

        The cursor advances with each applied operation, so an interrupted
        pull resumes where it stopped. Operations sealed under a key this
        device retired through a confirmed rotation are skipped. Any other
        decryption failure, a foreign key included, stops the pull with the
        cursor held before the failing operation.

        Returns:
            ``(applied, skipped)``
        """
        key = self.keys.load()
        retired = set(self.keys.retired_hashes())
        client_id = self.log.client_id
        applied = skipped = 0

        for _ in range(self.max_pull_loops):
            cursor = self.log.get_cursor()
            batch = self.store.pull(cursor, exclude_client_id=client_id, limit=self.pull_limit)
            batch_applied = 0
            for op in batch.ops:
                if self._apply_one(op, key, retired):
                    batch_applied += 1
                else:
                    skipped += 1
            self.log.set_cursor(batch.next_cursor)
            applied += batch_applied
            if batch.ops:
                self.events.emit(PullProgress(pulled=batch_applied))
            if batch.next_cursor <= cursor:
                break
        else:
            logger.warning(f"Stopped pulling after {self.max_pull_loops} batches; more remain")

        if self.log.deferred_count():
            self.log.process_deferred()
        if applied or skipped:
            logger.info(f"Pulled {applied} operations ({skipped} skipped)")
        return applied, skipped

    def _apply_one(self, op, key: Optional[SyncKey], retired: Set[str]) -> bool:
        try:
            plain = open_operation(op, key)
        except UndecryptableOperation as e:
            if not (e.key_mismatch and op.key_hash in retired):
                logger.error(f"Stopping pull at operation {op.id}: {e.reason}")
                raise
            logger.info(f"Skipping operation {op.id} sealed under retired key {op.key_hash}")
            if op.server_seq is not None:
                self.log.set_cursor(op.server_seq)
            return False
        self.log.apply_remote(plain)
        return True

    # === Queries and key rotation ===

    def get_pending_counts(self) -> PendingCounts:
        """Exact local push count and the store's pull estimate.

        The remote count is not queried while a cycle is running and a
        failing query reports 0.
        """
        counts = PendingCounts(push=self.log.pending_count())
        if self.tracker.is_syncing():
            return counts
        try:
            counts.pull = self.store.count_pending(
                self.log.get_cursor(), exclude_client_id=self.log.client_id
            )
        except SyncError as e:
            logger.debug(f"Could not fetch remote pending count: {e}")
        return counts

    def rotate_key(self, new_key: SyncKey, *, confirm: bool = False) -> Optional[SyncResult]:
        """Replace the sync key and re-push all local state under it.

        Raises:
            SyncInProgressError: If a cycle is running
            RotationNotConfirmed: Unless ``confirm`` is True
        """
        if self.tracker.is_syncing():
            raise SyncInProgressError("Cannot rotate the sync key while a sync is running")
        self.keys.rotate(new_key, confirm=confirm)
        return self.push()

    def _on_key_rotated(self, new_key: SyncKey, old_key: Optional[SyncKey]) -> None:
        self.log.reset_for_rotation()
