"""Stateful remote store on a server-side SQLite database.

Sequence numbers come from an AUTOINCREMENT primary key, so they are dense
within one database and never re-used. Duplicate pushes are absorbed by the
UNIQUE constraint on the operation id.
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from opsync.types import Operation, OperationType, PullBatch, PushAck, now_ms

from .base import DEFAULT_PULL_LIMIT

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    server_seq INTEGER PRIMARY KEY AUTOINCREMENT,
    op_id TEXT NOT NULL UNIQUE,
    client_id TEXT,
    table_name TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT,
    key_hash TEXT,
    timestamp INTEGER NOT NULL,
    server_timestamp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_operations_client ON operations(client_id);
"""

_EXCLUDE_CLAUSE = "(? IS NULL OR client_id IS NULL OR client_id != ?)"


class SQLiteOperationStore:
    """RemoteStore backed by a local SQLite file (stateful backend)."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly below
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        conn = self._get_conn()
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self, mode: str = "DEFERRED"):
        with self._connect() as conn:
            conn.execute(f"BEGIN {mode}")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                conn.execute("ROLLBACK")
                raise

    def push(self, ops: List[Operation], client_id: Optional[str] = None) -> PushAck:
        received_at = now_ms()
        inserted = 0
        with self._transaction("IMMEDIATE") as conn:
            for op in ops:
                cur = conn.execute(
                    """INSERT OR IGNORE INTO operations
                       (op_id, client_id, table_name, type, key, payload, key_hash,
                        timestamp, server_timestamp)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        op.id,
                        op.client_id or client_id,
                        op.table,
                        op.type.value,
                        json.dumps(op.key),
                        json.dumps(op.payload) if op.payload is not None else None,
                        op.key_hash,
                        op.timestamp,
                        received_at,
                    ),
                )
                inserted += cur.rowcount
            cursor = self._max_seq(conn)
        logger.debug(f"Accepted {inserted}/{len(ops)} operations, cursor now {cursor}")
        return PushAck(cursor=cursor, accepted=inserted)

    def pull(
        self,
        cursor: int,
        exclude_client_id: Optional[str] = None,
        limit: int = DEFAULT_PULL_LIMIT,
    ) -> PullBatch:
        with self._transaction() as conn:
            rows = conn.execute(
                f"""SELECT * FROM operations
                    WHERE server_seq > ? AND {_EXCLUDE_CLAUSE}
                    ORDER BY server_seq LIMIT ?""",
                (cursor, exclude_client_id, exclude_client_id, limit),
            ).fetchall()
            if len(rows) < limit:
                # Everything past the cursor was scanned, including the
                # caller's own operations that the filter dropped
                next_cursor = max(cursor, self._max_seq(conn))
            else:
                next_cursor = rows[-1]["server_seq"]
        return PullBatch(ops=[self._row_to_op(r) for r in rows], next_cursor=next_cursor)

    def count_pending(self, cursor: int, exclude_client_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM operations WHERE server_seq > ? AND {_EXCLUDE_CLAUSE}",
                (cursor, exclude_client_id, exclude_client_id),
            ).fetchone()
        return row[0]

    def health(self) -> Dict[str, Any]:
        with self._connect() as conn:
            cursor = self._max_seq(conn)
        return {"backend": "sqlite", "cursor": cursor}

    def _max_seq(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT MAX(server_seq) FROM operations").fetchone()
        return row[0] or 0

    def _row_to_op(self, row: sqlite3.Row) -> Operation:
        return Operation(
            id=row["op_id"],
            table=row["table_name"],
            type=OperationType(row["type"]),
            key=json.loads(row["key"]),
            payload=json.loads(row["payload"]) if row["payload"] is not None else None,
            timestamp=row["timestamp"],
            client_id=row["client_id"],
            server_seq=row["server_seq"],
            server_timestamp=row["server_timestamp"],
            key_hash=row["key_hash"],
        )
