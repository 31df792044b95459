"""Stateless remote store on a row-oriented document.

The document is a plain table (a spreadsheet, a CSV file) with one header
row. An operation's sequence number is its 1-based data row position, which
stays stable because rows are only ever appended. The highest assigned
sequence is mirrored in a small key/value store so the pending count can be
answered without reading the document.
"""

import csv
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from opsync.types import Operation, OperationType, PullBatch, PushAck, now_ms

from .base import DEFAULT_PULL_LIMIT

logger = logging.getLogger(__name__)

HEADERS = [
    "id",
    "table",
    "type",
    "key",
    "payload",
    "timestamp",
    "serverTimestamp",
    "keyHash",
    "clientId",
]

LAST_CURSOR_KEY = "last_cursor"


class TabularDocument(Protocol):
    """Append-only table addressed by 1-based data row index."""

    def read_ids(self) -> List[str]:
        ...

    def read_rows(self, start: int, count: int) -> List[List[str]]:
        """Data rows ``start .. start + count - 1`` (fewer at the end)."""
        ...

    def append_rows(self, rows: List[List[str]]) -> int:
        """Append rows and return the index of the last one written."""
        ...

    def row_count(self) -> int:
        ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class CsvDocument:
    """TabularDocument on a local CSV file."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            with open(self.path, "w", newline="") as f:
                csv.writer(f).writerow(HEADERS)

    def _read_all(self) -> List[List[str]]:
        with open(self.path, newline="") as f:
            rows = list(csv.reader(f))
        return rows[1:]

    def read_ids(self) -> List[str]:
        with self._lock:
            return [r[0] for r in self._read_all() if r]

    def read_rows(self, start: int, count: int) -> List[List[str]]:
        with self._lock:
            rows = self._read_all()
        return rows[start - 1 : start - 1 + count]

    def append_rows(self, rows: List[List[str]]) -> int:
        with self._lock:
            with open(self.path, "a", newline="") as f:
                csv.writer(f).writerows(rows)
            return len(self._read_all())

    def row_count(self) -> int:
        with self._lock:
            return len(self._read_all())


class JsonFileKV:
    """KeyValueStore persisted as one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            return json.load(f)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            with open(tmp, "w") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)


def _op_to_row(op: Operation, client_id: Optional[str], received_at: int) -> List[str]:
    return [
        op.id,
        op.table,
        op.type.value,
        json.dumps(op.key),
        json.dumps(op.payload) if op.payload is not None else "",
        str(op.timestamp),
        str(received_at),
        op.key_hash or "",
        op.client_id or client_id or "",
    ]


def _row_to_op(row: List[str], seq: int) -> Operation:
    row = row + [""] * (len(HEADERS) - len(row))
    return Operation(
        id=row[0],
        table=row[1],
        type=OperationType(row[2]),
        key=json.loads(row[3]) if row[3] else None,
        payload=json.loads(row[4]) if row[4] else None,
        timestamp=int(row[5] or 0),
        server_timestamp=int(row[6]) if row[6] else None,
        key_hash=row[7] or None,
        client_id=row[8] or None,
        server_seq=seq,
    )


class SheetOperationStore:
    """RemoteStore over a TabularDocument plus a KeyValueStore."""

    def __init__(self, document: TabularDocument, kv: KeyValueStore):
        self.document = document
        self.kv = kv
        self._lock = threading.Lock()

    def _last_cursor(self) -> int:
        value = self.kv.get(LAST_CURSOR_KEY)
        if value is None:
            return self.document.row_count()
        return int(value)

    def push(self, ops: List[Operation], client_id: Optional[str] = None) -> PushAck:
        # The document has no uniqueness constraint: check-then-append runs
        # under the lock
        with self._lock:
            known = set(self.document.read_ids())
            received_at = now_ms()
            rows = []
            for op in ops:
                if op.id in known:
                    continue
                known.add(op.id)
                rows.append(_op_to_row(op, client_id, received_at))
            if not rows:
                return PushAck(cursor=self._last_cursor(), accepted=0)
            cursor = self.document.append_rows(rows)
            self.kv.set(LAST_CURSOR_KEY, str(cursor))
        logger.debug(f"Appended {len(rows)}/{len(ops)} operations, cursor now {cursor}")
        return PushAck(cursor=cursor, accepted=len(rows))

    def pull(
        self,
        cursor: int,
        exclude_client_id: Optional[str] = None,
        limit: int = DEFAULT_PULL_LIMIT,
    ) -> PullBatch:
        rows = self.document.read_rows(cursor + 1, limit)
        ops = []
        for offset, row in enumerate(rows):
            if not row or not row[0]:
                continue
            op = _row_to_op(row, cursor + offset + 1)
            if exclude_client_id and op.client_id == exclude_client_id:
                continue
            ops.append(op)
        return PullBatch(ops=ops, next_cursor=cursor + len(rows))

    def count_pending(self, cursor: int, exclude_client_id: Optional[str] = None) -> int:
        """Approximate: rows past ``cursor``, the caller's own rows included."""
        return max(0, self._last_cursor() - cursor)

    def health(self) -> Dict[str, Any]:
        return {"backend": "sheet", "cursor": self._last_cursor()}
