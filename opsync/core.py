"""OpSync: wires the local log, key manager, remote store and cycle runners."""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from opsync.config import SyncConfig, load_config
from opsync.crypto import KeyManager, SyncKey
from opsync.engine import SyncEngine
from opsync.errors import SyncInProgressError
from opsync.events import Listener
from opsync.modules import JenkinsRefreshModule, NewsRefreshModule
from opsync.orchestrator import GlobalSyncOrchestrator, ReplicationModule
from opsync.remote import HttpRemoteStore, RemoteStore
from opsync.status import SyncStatusTracker
from opsync.storage import LocalOperationLog
from opsync.types import ModuleResult, Operation, PendingCounts, SyncResult, SyncStatus
from opsync.watchdog import StuckCycleWatchdog

logger = logging.getLogger(__name__)


class OpSync:
    """Main interface for an opsync device.

    Examples:
        >>> s = OpSync()
        >>> s.put("links", "docs", {"url": "https://example.com"})
        >>> s.sync()
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        store: Optional[RemoteStore] = None,
        modules: Optional[List[Any]] = None,
    ):
        self.config = config or load_config()
        self.log = LocalOperationLog(Path(self.config.db_path), tables=self.config.tables)
        self.keys = KeyManager(self.log)
        self.tracker = SyncStatusTracker(self.log)
        self._store = store
        self._engine: Optional[SyncEngine] = None
        self._extra_modules = modules
        self.watchdog = StuckCycleWatchdog(self.tracker, timeout=self.config.watchdog_timeout)

    @property
    def client_id(self) -> str:
        return self.log.client_id

    @property
    def store(self) -> RemoteStore:
        if self._store is None:
            if not self.config.has_remote:
                raise ValueError(
                    "No sync server configured. Set OPSYNC_SERVER_URL and OPSYNC_ACCESS_TOKEN "
                    "or run `opsync sync login`."
                )
            self._store = HttpRemoteStore(
                self.config.server_url,
                self.config.access_token,
                client_id=self.client_id,
                timeout=self.config.request_timeout,
                max_retries=self.config.max_retries,
                retry_base_delay=self.config.retry_base_delay,
            )
        return self._store

    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            self._engine = SyncEngine(
                self.log,
                self.store,
                self.keys,
                tracker=self.tracker,
                push_batch_size=self.config.push_batch_size,
                pull_limit=self.config.pull_limit,
                max_pull_loops=self.config.max_pull_loops,
            )
        return self._engine

    # === Local data ===

    def put(self, table: str, key: Any, data: Any) -> Optional[Operation]:
        return self.log.put_entity(table, key, data)

    def delete(self, table: str, key: Any) -> Optional[Operation]:
        return self.log.delete_entity(table, key)

    def get(self, table: str, key: Any) -> Any:
        return self.log.get_entity(table, key)

    def entities(self, table: str):
        return self.log.list_entities(table)

    # === Sync ===

    def sync(self) -> Optional[SyncResult]:
        return self.engine.sync()

    def push(self) -> Optional[SyncResult]:
        return self.engine.push()

    def pull(self) -> Optional[SyncResult]:
        return self.engine.pull()

    def global_sync(self) -> Optional[List[ModuleResult]]:
        return self.orchestrator().run_cycle()

    def orchestrator(self) -> GlobalSyncOrchestrator:
        if self._extra_modules is not None:
            modules = [ReplicationModule(self.engine), *self._extra_modules]
        else:
            modules = [
                ReplicationModule(self.engine),
                JenkinsRefreshModule(
                    self.log,
                    self.config.jenkins_url,
                    self.config.jenkins_user,
                    self.config.jenkins_token,
                    timeout=self.config.request_timeout,
                ),
                NewsRefreshModule(self.log, self.config.news_url, timeout=self.config.request_timeout),
            ]
        return GlobalSyncOrchestrator(self.tracker, modules)

    def status(self) -> SyncStatus:
        return self.tracker.snapshot()

    def pending_counts(self) -> PendingCounts:
        return self.engine.get_pending_counts()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.tracker.events.subscribe(listener)

    def rotate_key(self, new_key: SyncKey, *, confirm: bool = False) -> Optional[SyncResult]:
        """Rotate the sync key; re-pushes everything when a server is configured."""
        if self._store is not None or self.config.has_remote:
            return self.engine.rotate_key(new_key, confirm=confirm)
        if self.tracker.is_syncing():
            raise SyncInProgressError("Cannot rotate the sync key while a sync is running")
        self.keys.rotate(new_key, confirm=confirm)
        self.log.reset_for_rotation()
        return None

    def info(self) -> Dict[str, Any]:
        key = self.keys.load()
        return {
            "client_id": self.client_id,
            "db_path": str(self.log.db_path),
            "server_url": self.config.server_url,
            "key_hash": key.key_hash if key else None,
            "tables": sorted(self.log.tables),
            **self.log.stats(),
            "status": self.status().to_dict(),
        }
