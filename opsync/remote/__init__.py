"""Remote operation stores."""

from .base import DEFAULT_PULL_LIMIT, RemoteStore
from .http import HttpRemoteStore
from .sheet_store import CsvDocument, JsonFileKV, SheetOperationStore
from .sqlite_store import SQLiteOperationStore

__all__ = [
    "DEFAULT_PULL_LIMIT",
    "RemoteStore",
    "HttpRemoteStore",
    "SheetOperationStore",
    "CsvDocument",
    "JsonFileKV",
    "SQLiteOperationStore",
]
