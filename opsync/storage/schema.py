"""Database schema for the local operation log.

Contains:
- Schema DDL (SCHEMA) and version tracking (SCHEMA_VERSION)
- Logical table name validation (validate_table_name)
- Database initialization (init_db)
"""

import logging
import os
import re
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2  # v2: deferred_ops for operations on not-yet-replicated tables

_TABLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def validate_table_name(table: str) -> str:
    """Validate a logical table name.

    Logical tables are rows of the shared ``entities`` table, never SQL
    identifiers, but names are still kept to a conservative alphabet so they
    survive every remote backend unchanged.

    Raises:
        ValueError: If the name is empty or contains unsupported characters
    """
    if not isinstance(table, str) or not _TABLE_NAME_RE.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Local domain state, one row per (logical table, key)
CREATE TABLE IF NOT EXISTS entities (
    table_name TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (table_name, key)
);

-- Operation log: locally authored mutations plus the synced flag
CREATE TABLE IF NOT EXISTS operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    table_name TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT,
    timestamp INTEGER NOT NULL,
    client_id TEXT,
    server_seq INTEGER,
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_operations_synced ON operations(synced);

-- Pulled operations for tables this device does not replicate (yet)
CREATE TABLE IF NOT EXISTS deferred_ops (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT,
    timestamp INTEGER NOT NULL,
    client_id TEXT,
    server_seq INTEGER,
    deferred_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_deferred_table ON deferred_ops(table_name);

-- Settings: cursor, client id, key material, global sync status
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema and lock down file permissions."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Key material lives in this file: owner read/write only
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
