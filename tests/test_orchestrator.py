"""Tests for the global sync cycle."""

import pytest

from opsync.crypto import generate_key
from opsync.errors import AuthenticationError, UndecryptableOperation
from opsync.events import SyncCompleted, SyncFailed
from opsync.orchestrator import GlobalSyncOrchestrator, ReplicationModule, partial_failure_message
from opsync.status import SyncStatusTracker
from opsync.types import ModuleResult, SyncState


class FakeModule:
    def __init__(self, name, error=None, enabled=True):
        self.name = name
        self.error = error
        self._enabled = enabled
        self.runs = 0

    def enabled(self):
        return self._enabled

    def run(self):
        self.runs += 1
        if self.error is not None:
            raise self.error


@pytest.fixture
def tracker(log):
    return SyncStatusTracker(log)


class TestGlobalSync:
    def test_all_modules_succeed(self, tracker):
        modules = [FakeModule("one"), FakeModule("two")]
        events = []
        tracker.events.subscribe(events.append)

        results = GlobalSyncOrchestrator(tracker, modules).run_cycle()

        assert [r.success for r in results] == [True, True]
        status = tracker.snapshot()
        assert status.status == SyncState.IDLE
        assert status.last_error is None
        assert status.last_sync_at is not None
        assert isinstance(events[-1], SyncCompleted)

    def test_failing_module_gives_partial(self, tracker):
        modules = [
            FakeModule("jenkins", error=RuntimeError("HTTP 502")),
            FakeModule("replication"),
            FakeModule("news", error=ValueError("bad markdown")),
        ]

        results = GlobalSyncOrchestrator(tracker, modules).run_cycle()

        assert modules[1].runs == 1
        assert [r.success for r in results] == [False, True, False]
        status = tracker.snapshot()
        assert status.status == SyncState.PARTIAL
        assert status.last_error == (
            "Partial sync failure (jenkins, news): jenkins: HTTP 502; news: bad markdown"
        )

    def test_fatal_error_aborts_cycle(self, tracker):
        modules = [
            FakeModule("replication", error=AuthenticationError("Sync server rejected the access token")),
            FakeModule("news"),
        ]
        events = []
        tracker.events.subscribe(events.append)

        results = GlobalSyncOrchestrator(tracker, modules).run_cycle()

        assert results == []
        assert modules[1].runs == 0
        status = tracker.snapshot()
        assert status.status == SyncState.ERROR
        assert status.last_error == "Sync aborted: Sync server rejected the access token"
        assert isinstance(events[-1], SyncFailed)

    def test_undecryptable_operation_is_fatal(self, tracker):
        modules = [FakeModule("replication", error=UndecryptableOperation("op-1", "Authentication failed"))]
        GlobalSyncOrchestrator(tracker, modules).run_cycle()
        assert tracker.snapshot().status == SyncState.ERROR

    def test_disabled_modules_are_skipped(self, tracker):
        module = FakeModule("jenkins", enabled=False)
        (result,) = GlobalSyncOrchestrator(tracker, [module]).run_cycle()

        assert result.skipped
        assert result.success
        assert module.runs == 0
        assert tracker.snapshot().status == SyncState.IDLE

    def test_active_cycle_is_not_reentered(self, tracker):
        module = FakeModule("one")
        tracker.try_begin()

        assert GlobalSyncOrchestrator(tracker, [module]).run_cycle() is None
        assert module.runs == 0
        assert tracker.snapshot().status == SyncState.SYNCING

    def test_interrupt_leaves_error_status(self, tracker):
        modules = [FakeModule("one", error=KeyboardInterrupt())]

        with pytest.raises(KeyboardInterrupt):
            GlobalSyncOrchestrator(tracker, modules).run_cycle()
        status = tracker.snapshot()
        assert status.status == SyncState.ERROR
        assert status.last_error.startswith("Global sync failed")


class TestReplicationModule:
    def test_runs_push_and_pull(self, make_device):
        b = make_device("b")
        b.log.put_entity("links", "x", {})
        b.engine.push()

        a = make_device("a")
        a.log.put_entity("tags", "t", {})
        module = ReplicationModule(a.engine)
        events = []
        a.engine.subscribe(events.append)

        GlobalSyncOrchestrator(a.engine.tracker, [module]).run_cycle()

        assert module.last_result.pushed == 1
        assert module.last_result.pulled == 1
        completed = [e for e in events if isinstance(e, SyncCompleted)]
        assert completed[0].result is module.last_result

    def test_missing_key_is_a_module_failure(self, make_device):
        a = make_device("a", key=None)
        a.log.put_entity("links", "x", {})

        (result,) = GlobalSyncOrchestrator(a.engine.tracker, [ReplicationModule(a.engine)]).run_cycle()

        assert not result.success
        assert a.engine.tracker.snapshot().status == SyncState.PARTIAL

    def test_foreign_key_ops_abort_cycle(self, make_device):
        other = make_device("other", key=generate_key())
        other.log.put_entity("links", "x", {})
        other.engine.push()

        a = make_device("a")
        module = ReplicationModule(a.engine)
        GlobalSyncOrchestrator(a.engine.tracker, [module]).run_cycle()

        status = a.engine.tracker.snapshot()
        assert status.status == SyncState.ERROR
        assert status.last_error.startswith("Sync aborted")
        assert a.log.get_cursor() == 0

    def test_retired_key_ops_do_not_abort(self, make_device):
        old = make_device("old")
        old.log.put_entity("links", "x", {})
        old.engine.push()

        a = make_device("a")
        a.engine.rotate_key(generate_key(), confirm=True)
        module = ReplicationModule(a.engine)
        GlobalSyncOrchestrator(a.engine.tracker, [module]).run_cycle()

        assert module.last_result.skipped == 1
        assert a.engine.tracker.snapshot().status == SyncState.IDLE


def test_partial_failure_message():
    failed = [ModuleResult(module="a", success=False, error="x")]
    assert partial_failure_message(failed) == "Partial sync failure (a): a: x"
