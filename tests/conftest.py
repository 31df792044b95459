"""
Pytest fixtures and test configuration for opsync tests.
"""

from dataclasses import dataclass

import pytest

from opsync.crypto import KeyManager, generate_key
from opsync.engine import SyncEngine
from opsync.remote import SQLiteOperationStore
from opsync.storage import LocalOperationLog

TABLES = ["links", "tags", "jenkins_config", "news_cache"]


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.opsync."""
    home = tmp_path / "opsync-home"
    monkeypatch.setenv("OPSYNC_HOME", str(home))
    for var in ("OPSYNC_SERVER_URL", "OPSYNC_ACCESS_TOKEN", "OPSYNC_DB_PATH", "OPSYNC_TABLES"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def log(tmp_path):
    return LocalOperationLog(tmp_path / "local.db", tables=TABLES)


@pytest.fixture
def sync_key():
    return generate_key()


@pytest.fixture
def keys(log, sync_key):
    manager = KeyManager(log)
    manager.store(sync_key)
    return manager


@pytest.fixture
def remote(tmp_path):
    return SQLiteOperationStore(tmp_path / "remote.db")


@dataclass
class Device:
    name: str
    log: LocalOperationLog
    keys: KeyManager
    engine: SyncEngine


@pytest.fixture
def make_device(tmp_path, remote, sync_key):
    """Factory for devices sharing one remote store (and, by default, one key)."""

    def _make(name: str, key=sync_key, store=None, tables=TABLES, **engine_kwargs) -> Device:
        device_log = LocalOperationLog(tmp_path / f"{name}.db", tables=tables)
        manager = KeyManager(device_log)
        if key is not None:
            manager.store(key)
        engine = SyncEngine(device_log, store or remote, manager, **engine_kwargs)
        return Device(name=name, log=device_log, keys=manager, engine=engine)

    return _make
