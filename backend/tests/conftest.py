"""Pytest configuration and fixtures."""

import os
import secrets
import tempfile
from pathlib import Path

import pytest

# Generate a unique token for this test run
_TEST_ACCESS_TOKEN = f"test-only-{secrets.token_urlsafe(32)}"
_TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="opsync-server-tests-"))

os.environ.setdefault("ACCESS_TOKEN", _TEST_ACCESS_TOKEN)
os.environ.setdefault("STORE_BACKEND", "sqlite")
os.environ.setdefault("SQLITE_PATH", str(_TEST_DATA_DIR / "server.db"))
os.environ.setdefault("RATE_LIMIT", "10000/minute")

from app.config import get_settings  # noqa: E402
from app.main import app  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from opsync.remote import CsvDocument, JsonFileKV, SheetOperationStore, SQLiteOperationStore  # noqa: E402


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Headers carrying the configured access token."""
    return {"X-Access-Token": get_settings().access_token}


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Fresh stateful store for each test."""
    instance = SQLiteOperationStore(tmp_path / "server.db")
    monkeypatch.setattr("app.database._store", instance)
    return instance


@pytest.fixture
def sheet_store(tmp_path, monkeypatch):
    """Fresh stateless (CSV-backed) store for each test."""
    instance = SheetOperationStore(CsvDocument(tmp_path / "ops.csv"), JsonFileKV(tmp_path / "kv.json"))
    monkeypatch.setattr("app.database._store", instance)
    return instance
