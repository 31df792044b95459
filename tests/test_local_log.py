"""Tests for the local operation log (opsync.storage.sqlite)."""

import sqlite3
import uuid
from unittest.mock import patch

import pytest

from opsync.storage import LocalOperationLog
from opsync.types import Operation, OperationType, now_ms


def _remote_op(table="links", key="k1", payload=None, seq=1, ts=None, op_type=OperationType.CREATE):
    return Operation(
        id=str(uuid.uuid4()),
        table=table,
        type=op_type,
        key=key,
        payload=payload if payload is not None or op_type == OperationType.DELETE else {"v": seq},
        timestamp=ts if ts is not None else now_ms(),
        client_id="other-device",
        server_seq=seq,
    )


class TestEntities:
    def test_put_logs_create_then_update(self, log):
        first = log.put_entity("links", "docs", {"url": "a"})
        second = log.put_entity("links", "docs", {"url": "b"})

        assert first.type == OperationType.CREATE
        assert second.type == OperationType.UPDATE
        assert first.client_id == log.client_id
        assert log.get_entity("links", "docs") == {"url": "b"}
        assert log.pending_count() == 2

    def test_entity_write_and_append_are_atomic(self, log):
        with patch.object(log, "_insert_op", side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(sqlite3.OperationalError):
                log.put_entity("links", "docs", {"url": "a"})

        assert log.get_entity("links", "docs") is None
        assert log.pending_count() == 0

    def test_unreplicated_table_is_written_without_operation(self, log):
        assert log.put_entity("scratch", "x", {"n": 1}) is None
        assert log.get_entity("scratch", "x") == {"n": 1}
        assert log.pending_count() == 0

    def test_delete_logs_delete(self, log):
        log.put_entity("tags", "red", {"color": "#f00"})
        op = log.delete_entity("tags", "red")

        assert op.type == OperationType.DELETE
        assert op.payload is None
        assert log.get_entity("tags", "red") is None

    def test_structured_keys(self, log):
        log.put_entity("links", {"env": "prod", "id": 3}, {"url": "x"})
        assert log.get_entity("links", {"id": 3, "env": "prod"}) == {"url": "x"}
        assert log.list_entities("links") == [({"env": "prod", "id": 3}, {"url": "x"})]

    def test_invalid_table_name(self, log):
        with pytest.raises(ValueError):
            log.put_entity("Bad Table;", "k", {})


class TestOperationLog:
    def test_pending_operations_in_append_order(self, log):
        for i in range(5):
            log.put_entity("links", f"k{i}", {"i": i})

        pending = log.pending_operations()
        assert [op.key for op in pending] == ["k0", "k1", "k2", "k3", "k4"]
        assert [op.key for op in log.pending_operations(limit=2)] == ["k0", "k1"]

    def test_mark_synced(self, log):
        ops = [log.put_entity("links", f"k{i}", {}) for i in range(3)]
        assert log.mark_synced([ops[0].id, ops[1].id]) == 2
        assert log.pending_count() == 1
        assert log.pending_operations()[0].id == ops[2].id

    def test_append_raw_operation(self, log):
        op = Operation(id="manual", table="links", type="create", key="k", payload={})
        log.append(op)
        assert log.pending_operations()[0].id == "manual"
        assert log.get_entity("links", "k") is None

    def test_client_id_is_stable(self, log, tmp_path):
        reopened = LocalOperationLog(tmp_path / "local.db")
        assert reopened.client_id == log.client_id
        uuid.UUID(log.client_id)


class TestCursor:
    def test_cursor_defaults_to_zero(self, log):
        assert log.get_cursor() == 0

    def test_cursor_never_moves_backwards(self, log):
        log.set_cursor(10)
        assert log.set_cursor(4) == 10
        assert log.get_cursor() == 10

    def test_reset_cursor(self, log):
        log.set_cursor(10)
        log.reset_cursor()
        assert log.get_cursor() == 0


class TestApplyRemote:
    def test_create_applies_and_advances_cursor(self, log):
        assert log.apply_remote(_remote_op(key="a", payload={"url": "x"}, seq=7)) is True
        assert log.get_entity("links", "a") == {"url": "x"}
        assert log.get_cursor() == 7
        # Pulled operations are not re-pushed
        assert log.pending_count() == 0

    def test_reapplying_is_a_noop(self, log):
        op = _remote_op(key="a", payload={"v": 1}, seq=3)
        log.apply_remote(op)
        log.put_entity("links", "a", {"v": "local"})

        assert log.apply_remote(op) is False
        assert log.get_entity("links", "a") == {"v": "local"}

    def test_older_remote_write_loses(self, log):
        log.put_entity("links", "a", {"v": "local"})
        log.apply_remote(_remote_op(key="a", payload={"v": "stale"}, seq=1, ts=1))

        assert log.get_entity("links", "a") == {"v": "local"}
        assert log.get_cursor() == 1

    def test_newer_remote_write_wins(self, log):
        log.put_entity("links", "a", {"v": "local"})
        log.apply_remote(_remote_op(key="a", payload={"v": "remote"}, seq=1, ts=now_ms() + 60_000))
        assert log.get_entity("links", "a") == {"v": "remote"}

    def test_remote_delete(self, log):
        log.apply_remote(_remote_op(key="a", seq=1, ts=1000))
        log.apply_remote(_remote_op(key="a", seq=2, ts=2000, op_type=OperationType.DELETE))
        assert log.get_entity("links", "a") is None
        assert log.get_cursor() == 2

    def test_sealed_operation_rejected(self, log):
        op = _remote_op()
        op.table = "encrypted"
        with pytest.raises(ValueError):
            log.apply_remote(op)
        assert log.get_cursor() == 0


class TestDeferred:
    def test_unknown_table_is_deferred_then_replayed(self, log):
        log.apply_remote(_remote_op(table="notes", key="n1", payload={"text": "hi"}, seq=4))

        assert log.get_entity("notes", "n1") is None
        assert log.deferred_count() == 1
        assert log.get_cursor() == 4

        log.set_tables(list(log.tables) + ["notes"])
        assert log.process_deferred() == 1
        assert log.get_entity("notes", "n1") == {"text": "hi"}
        assert log.deferred_count() == 0

    def test_deferred_ops_replay_in_timestamp_order(self, log):
        log.apply_remote(_remote_op(table="notes", key="n", payload={"v": 2}, seq=1, ts=2000))
        log.apply_remote(_remote_op(table="notes", key="n", payload={"v": 1}, seq=2, ts=1000))

        log.set_tables(["notes"])
        log.process_deferred()
        assert log.get_entity("notes", "n") == {"v": 2}

    def test_still_unreplicated_ops_stay_parked(self, log):
        log.apply_remote(_remote_op(table="notes", key="n", seq=1))
        assert log.process_deferred() == 0
        assert log.deferred_count() == 1


class TestRotationReset:
    def test_regenerates_one_create_per_replicated_entity(self, log):
        log.put_entity("links", "a", {"v": 1})
        log.put_entity("links", "a", {"v": 2})
        log.put_entity("tags", "t", {"c": 1})
        log.put_entity("scratch", "s", {})
        log.mark_synced([op.id for op in log.pending_operations()])
        log.set_cursor(12)

        assert log.reset_for_rotation() == 2

        pending = log.pending_operations()
        assert {(op.table, op.key) for op in pending} == {("links", "a"), ("tags", "t")}
        assert all(op.type == OperationType.CREATE for op in pending)
        assert {op.key: op.payload for op in pending}["a"] == {"v": 2}
        assert log.get_cursor() == 0

    def test_stats(self, log):
        log.put_entity("links", "a", {})
        stats = log.stats()
        assert stats["entities"] == 1
        assert stats["pending"] == 1
        assert stats["cursor"] == 0
