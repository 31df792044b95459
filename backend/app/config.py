"""Configuration settings for the opsync sync server."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Shared credential every client sends as X-Access-Token
    access_token: str  # Required - no default for security

    # Store
    store_backend: Literal["sqlite", "sheet"] = "sqlite"
    sqlite_path: str = "data/opsync-server.db"
    # Stateless backend: a CSV document plus a JSON counter file, or a Google
    # Sheet when sheet_spreadsheet_key is set
    sheet_csv_path: str = "data/operations.csv"
    sheet_kv_path: str = "data/kv.json"
    sheet_spreadsheet_key: str | None = None
    sheet_worksheet: str = "operations"
    google_credentials_file: str | None = None

    # Pull page sizes
    default_pull_limit: int = 1000
    max_pull_limit: int = 1000

    # App
    debug: bool = False
    rate_limit: str = "120/minute"
    # Peers allowed to set X-Forwarded-For
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
