"""Data types shared across the opsync packages."""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# The table name every sealed operation carries on the wire
ENCRYPTED_TABLE = "encrypted"

# Settings keys kept in the local sync_meta table
META_CURSOR = "last_server_cursor"
META_CLIENT_ID = "client_id"
META_SYNC_KEY = "sync_encryption_key"
META_RETIRED_KEY_HASHES = "retired_key_hashes"
META_STATUS = "global_sync_status"
META_STARTED_AT = "global_sync_start_time"
META_LAST_ERROR = "global_sync_error"
META_LAST_SYNC = "last_global_sync"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(str, Enum):
    """Lifecycle states of a device-wide sync cycle."""

    IDLE = "idle"
    SYNCING = "syncing"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass
class Operation:
    """A single replicated mutation.

    ``key`` and ``payload`` are arbitrary JSON values. ``server_seq`` and
    ``server_timestamp`` are assigned by the remote store and stay ``None``
    until the operation has been accepted there.
    """

    id: str
    table: str
    type: OperationType
    key: Any
    payload: Any = None
    timestamp: int = field(default_factory=now_ms)
    client_id: Optional[str] = None
    server_seq: Optional[int] = None
    server_timestamp: Optional[int] = None
    key_hash: Optional[str] = None
    synced: bool = False

    def __post_init__(self):
        if not isinstance(self.type, OperationType):
            self.type = OperationType(self.type)

    @property
    def is_sealed(self) -> bool:
        return self.table == ENCRYPTED_TABLE

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation (camelCase, as the remote service speaks it)."""
        data = {
            "id": self.id,
            "table": self.table,
            "type": self.type.value,
            "key": self.key,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "clientId": self.client_id,
            "keyHash": self.key_hash,
        }
        if self.server_seq is not None:
            data["serverSeq"] = self.server_seq
        if self.server_timestamp is not None:
            data["serverTimestamp"] = self.server_timestamp
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        return cls(
            id=data["id"],
            table=data["table"],
            type=OperationType(data["type"]),
            key=data.get("key"),
            payload=data.get("payload"),
            timestamp=int(data.get("timestamp") or 0),
            client_id=data.get("clientId"),
            server_seq=data.get("serverSeq"),
            server_timestamp=data.get("serverTimestamp"),
            key_hash=data.get("keyHash"),
        )

    def key_text(self) -> str:
        """Canonical text form of ``key`` used for storage lookups."""
        return json.dumps(self.key, sort_keys=True, separators=(",", ":"))


@dataclass
class PushAck:
    """Store acknowledgement of a push."""

    cursor: int  # Highest server_seq the store holds
    accepted: int = 0  # Operations newly appended (duplicates excluded)


@dataclass
class PullBatch:
    """One page of operations returned by a remote store."""

    ops: List[Operation]
    next_cursor: int

    @property
    def empty(self) -> bool:
        return not self.ops


@dataclass
class PendingCounts:
    push: int = 0
    pull: int = 0


@dataclass
class SyncResult:
    """Result of a push and/or pull."""

    pushed: int = 0  # Operations acknowledged by the store
    pulled: int = 0  # Operations applied locally
    skipped: int = 0  # Operations sealed under a retired key
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class SyncStatus:
    """Persisted device-wide sync status."""

    status: SyncState = SyncState.IDLE
    started_at: Optional[int] = None
    last_error: Optional[str] = None
    last_sync_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ModuleResult:
    """Outcome of one module within a global sync cycle."""

    module: str
    success: bool
    error: Optional[str] = None
    skipped: bool = False
