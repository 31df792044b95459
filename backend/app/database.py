"""Remote operation store selection for the sync server."""

from pathlib import Path
from typing import Annotated

from fastapi import Depends

from opsync.remote import CsvDocument, JsonFileKV, RemoteStore, SheetOperationStore, SQLiteOperationStore

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("opsync.server.store")

_store: RemoteStore | None = None


def create_store(settings: Settings) -> RemoteStore:
    """Build the store configured by STORE_BACKEND."""
    if settings.store_backend == "sqlite":
        logger.info(f"Using stateful SQLite store at {settings.sqlite_path}")
        return SQLiteOperationStore(Path(settings.sqlite_path))

    kv = JsonFileKV(Path(settings.sheet_kv_path))
    if settings.sheet_spreadsheet_key:
        from opsync.remote.gsheets import GoogleSheetDocument

        if not settings.google_credentials_file:
            raise ValueError("GOOGLE_CREDENTIALS_FILE must be set for a Google Sheets store")
        logger.info(f"Using stateless Google Sheets store {settings.sheet_spreadsheet_key}")
        document = GoogleSheetDocument.open(
            settings.google_credentials_file,
            settings.sheet_spreadsheet_key,
            worksheet=settings.sheet_worksheet,
        )
    else:
        logger.info(f"Using stateless CSV store at {settings.sheet_csv_path}")
        document = CsvDocument(Path(settings.sheet_csv_path))
    return SheetOperationStore(document, kv)


def get_store_instance(settings: Settings | None = None) -> RemoteStore:
    """Get the cached store, creating it on first use."""
    global _store
    if _store is None:
        _store = create_store(settings or get_settings())
    return _store


def reset_store() -> None:
    """Drop the cached store (tests switch backends between cases)."""
    global _store
    _store = None


def get_store(settings: Annotated[Settings, Depends(get_settings)]) -> RemoteStore:
    """FastAPI dependency for the operation store."""
    return get_store_instance(settings)


# Type alias for dependency injection
Store = Annotated[RemoteStore, Depends(get_store)]
