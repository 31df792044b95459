"""SQLite-backed local operation log.

Holds the device's domain state (``entities``), the log of locally authored
operations awaiting push, the pull cursor and the small settings table the
rest of the client keeps its state in. Every public method opens its own
connection; multi-statement changes run in one transaction.
"""

import contextlib
import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from opsync.types import (
    META_CLIENT_ID,
    META_CURSOR,
    Operation,
    OperationType,
    now_ms,
)

from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999
_IN_CHUNK = 500


def _key_text(key: Any) -> str:
    return json.dumps(key, sort_keys=True, separators=(",", ":"))


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"))


def _from_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


class LocalOperationLog:
    """Durable per-device log of operations plus the replicated entity state.

    Args:
        db_path: Path to the SQLite database file (created if missing).
        tables: Logical tables this device replicates. Pulled operations for
            any other table are parked in ``deferred_ops`` until the table is
            added.
    """

    def __init__(self, db_path: Path, tables: Optional[Iterable[str]] = None):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._tables = frozenset(validate_table_name(t) for t in (tables or ()))
        with self._connect() as conn:
            init_db(conn, self.db_path)
        self.client_id = self.get_client_id()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @property
    def tables(self) -> frozenset:
        return self._tables

    def is_replicated(self, table: str) -> bool:
        return table in self._tables

    def set_tables(self, tables: Iterable[str]) -> None:
        """Change the replicated table set. Call process_deferred() afterwards."""
        self._tables = frozenset(validate_table_name(t) for t in tables)

    # === Settings ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            self._set_meta(conn, key, value)

    def set_meta_many(self, values: Dict[str, Optional[str]]) -> None:
        """Write several settings atomically. ``None`` deletes the key."""
        with self._connect() as conn:
            for key, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
                else:
                    self._set_meta(conn, key, value)

    def set_meta_if(
        self,
        keys: Sequence[str],
        predicate: Callable[[Dict[str, Optional[str]]], bool],
        values: Dict[str, Optional[str]],
    ) -> bool:
        """Write ``values`` only if ``predicate`` accepts the current ``keys``.

        The read and the write share one ``BEGIN IMMEDIATE`` transaction, so
        two processes on the same file cannot both pass the check. Returns
        whether the write happened.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = {}
            for key in keys:
                row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
                current[key] = row["value"] if row else None
            if not predicate(current):
                return False
            for key, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
                else:
                    self._set_meta(conn, key, value)
        return True

    def delete_meta(self, *keys: str) -> None:
        with self._connect() as conn:
            for key in keys:
                conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, now_ms()),
        )

    def get_client_id(self) -> str:
        """Stable identifier of this device, created on first use."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (META_CLIENT_ID,)
            ).fetchone()
            if row:
                return row["value"]
            client_id = str(uuid.uuid4())
            self._set_meta(conn, META_CLIENT_ID, client_id)
            logger.info(f"Generated client id {client_id}")
            return client_id

    # === Cursor ===

    def get_cursor(self) -> int:
        value = self.get_meta(META_CURSOR)
        return int(value) if value else 0

    def set_cursor(self, seq: int) -> int:
        """Advance the cursor to ``seq``. Never moves it backwards."""
        with self._connect() as conn:
            return self._advance_cursor(conn, seq)

    def reset_cursor(self) -> None:
        self.delete_meta(META_CURSOR)

    def _cursor_in(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (META_CURSOR,)).fetchone()
        return int(row["value"]) if row else 0

    def _advance_cursor(self, conn: sqlite3.Connection, seq: int) -> int:
        current = self._cursor_in(conn)
        if seq > current:
            self._set_meta(conn, META_CURSOR, str(seq))
            return seq
        return current

    # === Entities ===

    def put_entity(self, table: str, key: Any, data: Any) -> Optional[Operation]:
        """Create or update a local entity and log the matching operation.

        Returns the appended operation, or ``None`` when ``table`` is not
        replicated (the entity is still written).
        """
        validate_table_name(table)
        key_text = _key_text(key)
        ts = now_ms()
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM entities WHERE table_name = ? AND key = ?", (table, key_text)
            ).fetchone()
            conn.execute(
                "INSERT OR REPLACE INTO entities (table_name, key, data, updated_at) VALUES (?, ?, ?, ?)",
                (table, key_text, _to_json(data), ts),
            )
            if not self.is_replicated(table):
                return None
            op = Operation(
                id=str(uuid.uuid4()),
                table=table,
                type=OperationType.UPDATE if exists else OperationType.CREATE,
                key=key,
                payload=data,
                timestamp=ts,
                client_id=self._client_id_in(conn),
            )
            self._insert_op(conn, op)
            return op

    def delete_entity(self, table: str, key: Any) -> Optional[Operation]:
        """Remove a local entity and log a delete operation."""
        validate_table_name(table)
        key_text = _key_text(key)
        with self._connect() as conn:
            conn.execute("DELETE FROM entities WHERE table_name = ? AND key = ?", (table, key_text))
            if not self.is_replicated(table):
                return None
            op = Operation(
                id=str(uuid.uuid4()),
                table=table,
                type=OperationType.DELETE,
                key=key,
                client_id=self._client_id_in(conn),
            )
            self._insert_op(conn, op)
            return op

    def get_entity(self, table: str, key: Any) -> Any:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM entities WHERE table_name = ? AND key = ?",
                (table, _key_text(key)),
            ).fetchone()
        return _from_json(row["data"]) if row else None

    def list_entities(self, table: str) -> List[Tuple[Any, Any]]:
        """All ``(key, data)`` pairs of a logical table, ordered by key."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, data FROM entities WHERE table_name = ? ORDER BY key", (table,)
            ).fetchall()
        return [(json.loads(r["key"]), _from_json(r["data"])) for r in rows]

    def _client_id_in(self, conn: sqlite3.Connection) -> Optional[str]:
        row = conn.execute(
            "SELECT value FROM sync_meta WHERE key = ?", (META_CLIENT_ID,)
        ).fetchone()
        return row["value"] if row else None

    # === Operation log ===

    def append(self, op: Operation) -> None:
        """Append an operation as pending. The entity table is not touched."""
        with self._connect() as conn:
            self._insert_op(conn, op)

    def _insert_op(self, conn: sqlite3.Connection, op: Operation) -> None:
        conn.execute(
            """INSERT INTO operations
               (id, table_name, type, key, payload, timestamp, client_id, synced)
               VALUES (?, ?, ?, ?, ?, ?, ?, 0)""",
            (
                op.id,
                op.table,
                op.type.value,
                _key_text(op.key),
                _to_json(op.payload),
                op.timestamp,
                op.client_id,
            ),
        )

    def pending_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM operations WHERE synced = 0").fetchone()
        return row[0]

    def pending_operations(self, limit: Optional[int] = None) -> List[Operation]:
        """Unsynced operations in append order."""
        sql = "SELECT * FROM operations WHERE synced = 0 ORDER BY seq"
        params: Tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_op(r) for r in rows]

    def mark_synced(self, op_ids: List[str], server_seq: Optional[int] = None) -> int:
        """Flag operations as acknowledged by the remote store."""
        updated = 0
        with self._connect() as conn:
            for start in range(0, len(op_ids), _IN_CHUNK):
                chunk = op_ids[start : start + _IN_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                cur = conn.execute(
                    f"UPDATE operations SET synced = 1, server_seq = COALESCE(?, server_seq) "
                    f"WHERE id IN ({placeholders})",
                    (server_seq, *chunk),
                )
                updated += cur.rowcount
        return updated

    def _row_to_op(self, row: sqlite3.Row) -> Operation:
        return Operation(
            id=row["id"],
            table=row["table_name"],
            type=OperationType(row["type"]),
            key=json.loads(row["key"]),
            payload=_from_json(row["payload"]),
            timestamp=row["timestamp"],
            client_id=row["client_id"],
            server_seq=row["server_seq"],
            synced=bool(row["synced"]),
        )

    # === Applying pulled operations ===

    def apply_remote(self, op: Operation) -> bool:
        """Materialize a pulled, already decrypted operation.

        The entity change and the cursor advance to ``op.server_seq`` commit
        together. Returns False without touching anything when the operation
        is at or behind the cursor (already applied).
        """
        if op.is_sealed:
            raise ValueError(f"Operation {op.id} is still sealed")
        with self._connect() as conn:
            if op.server_seq is not None and op.server_seq <= self._cursor_in(conn):
                return False
            if self.is_replicated(op.table):
                self._apply_entity(conn, op)
            else:
                self._defer(conn, op)
            if op.server_seq is not None:
                self._advance_cursor(conn, op.server_seq)
        return True

    def _apply_entity(self, conn: sqlite3.Connection, op: Operation) -> bool:
        """Last-write-wins application of one operation to ``entities``."""
        key_text = _key_text(op.key)
        row = conn.execute(
            "SELECT updated_at FROM entities WHERE table_name = ? AND key = ?",
            (op.table, key_text),
        ).fetchone()
        if row is not None and row["updated_at"] > op.timestamp:
            logger.debug(f"Skipping {op.type.value} {op.table}/{key_text}: local copy is newer")
            return False

        if op.type == OperationType.DELETE:
            conn.execute(
                "DELETE FROM entities WHERE table_name = ? AND key = ?", (op.table, key_text)
            )
        else:
            conn.execute(
                "INSERT OR REPLACE INTO entities (table_name, key, data, updated_at) VALUES (?, ?, ?, ?)",
                (op.table, key_text, _to_json(op.payload), op.timestamp),
            )
        return True

    def _defer(self, conn: sqlite3.Connection, op: Operation) -> None:
        logger.info(f"Deferring operation {op.id} for unreplicated table {op.table!r}")
        conn.execute(
            """INSERT OR REPLACE INTO deferred_ops
               (id, table_name, type, key, payload, timestamp, client_id, server_seq, deferred_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                op.id,
                op.table,
                op.type.value,
                _key_text(op.key),
                _to_json(op.payload),
                op.timestamp,
                op.client_id,
                op.server_seq,
                now_ms(),
            ),
        )

    def deferred_count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM deferred_ops").fetchone()[0]

    def process_deferred(self) -> int:
        """Replay parked operations whose table is now replicated.

        Operations are applied in timestamp order. One that cannot be decoded
        is logged and dropped. Returns the number applied.
        """
        if not self._tables:
            return 0
        applied = 0
        placeholders = ",".join("?" * len(self._tables))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM deferred_ops WHERE table_name IN ({placeholders}) "
                f"ORDER BY timestamp, server_seq",
                tuple(sorted(self._tables)),
            ).fetchall()
            for row in rows:
                try:
                    op = Operation(
                        id=row["id"],
                        table=row["table_name"],
                        type=OperationType(row["type"]),
                        key=json.loads(row["key"]),
                        payload=_from_json(row["payload"]),
                        timestamp=row["timestamp"],
                        client_id=row["client_id"],
                        server_seq=row["server_seq"],
                    )
                    if self._apply_entity(conn, op):
                        applied += 1
                except (ValueError, TypeError) as e:
                    logger.warning(f"Dropping undecodable deferred operation {row['id']}: {e}")
                conn.execute("DELETE FROM deferred_ops WHERE id = ?", (row["id"],))
        if rows:
            logger.info(f"Processed {len(rows)} deferred operations ({applied} applied)")
        return applied

    # === Key rotation support ===

    def reset_for_rotation(self) -> int:
        """Discard sync history and re-log every replicated entity.

        Clears the cursor, the operation log and deferred operations, then
        appends one pending ``create`` per replicated entity carrying its
        current data and last update time. Returns the number of operations
        regenerated.
        """
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_meta WHERE key = ?", (META_CURSOR,))
            conn.execute("DELETE FROM operations")
            conn.execute("DELETE FROM deferred_ops")
            client_id = self._client_id_in(conn)
            rows = conn.execute(
                "SELECT table_name, key, data, updated_at FROM entities ORDER BY updated_at"
            ).fetchall()
            count = 0
            for row in rows:
                if not self.is_replicated(row["table_name"]):
                    continue
                self._insert_op(
                    conn,
                    Operation(
                        id=str(uuid.uuid4()),
                        table=row["table_name"],
                        type=OperationType.CREATE,
                        key=json.loads(row["key"]),
                        payload=_from_json(row["data"]),
                        timestamp=row["updated_at"],
                        client_id=client_id,
                    ),
                )
                count += 1
        logger.info(f"Regenerated {count} operations after key rotation")
        return count

    def stats(self) -> Dict[str, int]:
        with self._connect() as conn:
            return {
                "entities": conn.execute("SELECT COUNT(*) FROM entities").fetchone()[0],
                "operations": conn.execute("SELECT COUNT(*) FROM operations").fetchone()[0],
                "pending": conn.execute(
                    "SELECT COUNT(*) FROM operations WHERE synced = 0"
                ).fetchone()[0],
                "deferred": conn.execute("SELECT COUNT(*) FROM deferred_ops").fetchone()[0],
                "cursor": self._cursor_in(conn),
            }

    def close(self):
        """Connections are per-operation; nothing persistent to close."""
        pass
