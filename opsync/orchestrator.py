"""Global sync: one device-wide cycle running replication and refresh modules.

Modules run in order. A failing module is recorded and the others still run;
the cycle then ends ``partial``. Authentication and decryption failures are
fatal: they stop the cycle and leave the status ``error``.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from opsync.errors import AuthenticationError, UndecryptableOperation
from opsync.events import SyncCompleted, SyncFailed
from opsync.status import SyncStatusTracker
from opsync.types import ModuleResult, SyncResult, SyncState

logger = logging.getLogger(__name__)

FATAL_ERRORS = (AuthenticationError, UndecryptableOperation)


class SyncModule(Protocol):
    name: str

    def enabled(self) -> bool:
        ...

    def run(self) -> None:
        ...


class ReplicationModule:
    """Push then pull through the sync engine."""

    name = "replication"

    def __init__(self, engine):
        self.engine = engine
        self.last_result: Optional[SyncResult] = None

    def enabled(self) -> bool:
        return True

    def run(self) -> None:
        result = SyncResult()
        result.pushed = self.engine.push_pending()
        result.pulled, result.skipped = self.engine.pull_remote()
        self.last_result = result


def partial_failure_message(failed: Sequence[ModuleResult]) -> str:
    names = ", ".join(r.module for r in failed)
    details = "; ".join(f"{r.module}: {r.error}" for r in failed)
    return f"Partial sync failure ({names}): {details}"


class GlobalSyncOrchestrator:
    def __init__(self, tracker: SyncStatusTracker, modules: Sequence[SyncModule]):
        self.tracker = tracker
        self.modules = list(modules)

    def run_cycle(self) -> Optional[List[ModuleResult]]:
        """Run every module once.

        Returns the per-module results, or None if a cycle was already active.
        """
        if not self.tracker.try_begin():
            logger.info("Global sync already in progress, skipping")
            return None

        results: List[ModuleResult] = []
        try:
            for module in self.modules:
                results.append(self._run_module(module))
        except FATAL_ERRORS as e:
            error = f"Sync aborted: {e}"
            self.tracker.finish(SyncState.ERROR, error)
            self.tracker.events.emit(SyncFailed(error))
            return results
        except BaseException as e:
            self.tracker.finish(SyncState.ERROR, f"Global sync failed: {e}")
            raise

        failed = [r for r in results if not r.success]
        if failed:
            self.tracker.finish(SyncState.PARTIAL, partial_failure_message(failed))
        else:
            self.tracker.finish(SyncState.IDLE)
        self.tracker.events.emit(SyncCompleted(self._replication_result()))
        return results

    def _run_module(self, module: SyncModule) -> ModuleResult:
        if not module.enabled():
            logger.debug(f"Skipping unconfigured module {module.name}")
            return ModuleResult(module=module.name, success=True, skipped=True)
        try:
            module.run()
        except FATAL_ERRORS as e:
            logger.error(f"Module {module.name} hit a fatal error: {e}")
            raise
        except Exception as e:
            logger.warning(f"Module {module.name} failed: {e}")
            return ModuleResult(module=module.name, success=False, error=str(e))
        return ModuleResult(module=module.name, success=True)

    def _replication_result(self) -> SyncResult:
        for module in self.modules:
            if isinstance(module, ReplicationModule) and module.last_result is not None:
                return module.last_result
        return SyncResult()
