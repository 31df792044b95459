"""Client configuration.

Values are loaded with priority:
1. ``~/.opsync/credentials.json`` (preferred)
2. ``OPSYNC_*`` environment variables (fallback)
3. Built-in defaults
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from opsync.utils import get_opsync_home, validate_server_url

logger = logging.getLogger(__name__)

DEFAULT_TABLES = ["links", "tags", "jenkins_config", "news_cache"]


@dataclass
class SyncConfig:
    """Everything the client needs to reach the remote store and run cycles."""

    server_url: Optional[str] = None
    access_token: Optional[str] = None
    db_path: Optional[Path] = None
    tables: List[str] = field(default_factory=lambda: list(DEFAULT_TABLES))
    request_timeout: float = 30.0
    push_batch_size: int = 50
    pull_limit: int = 1000
    max_pull_loops: int = 100
    max_retries: int = 5
    retry_base_delay: float = 1.0
    watchdog_timeout: float = 300.0
    watchdog_interval: float = 10.0

    # Jenkins refresh module (skipped unless all three are present)
    jenkins_url: Optional[str] = None
    jenkins_user: Optional[str] = None
    jenkins_token: Optional[str] = None

    # News refresh module (skipped when unset)
    news_url: Optional[str] = None

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = get_opsync_home() / "opsync.db"
        else:
            self.db_path = Path(self.db_path).expanduser()

    @property
    def has_remote(self) -> bool:
        return bool(self.server_url and self.access_token)

    @property
    def has_jenkins(self) -> bool:
        return bool(self.jenkins_url and self.jenkins_user and self.jenkins_token)


_ENV_FIELDS = {
    "server_url": "OPSYNC_SERVER_URL",
    "access_token": "OPSYNC_ACCESS_TOKEN",
    "db_path": "OPSYNC_DB_PATH",
    "jenkins_url": "OPSYNC_JENKINS_URL",
    "jenkins_user": "OPSYNC_JENKINS_USER",
    "jenkins_token": "OPSYNC_JENKINS_TOKEN",
    "news_url": "OPSYNC_NEWS_URL",
}

_NUMERIC_ENV_FIELDS = {
    "request_timeout": ("OPSYNC_REQUEST_TIMEOUT", float),
    "push_batch_size": ("OPSYNC_PUSH_BATCH_SIZE", int),
    "pull_limit": ("OPSYNC_PULL_LIMIT", int),
}


def load_config(credentials_path: Optional[Path] = None) -> SyncConfig:
    """Build a SyncConfig from the credentials file and environment."""
    values = {}

    path = credentials_path or get_opsync_home() / "credentials.json"
    if path.exists():
        try:
            with open(path) as f:
                creds = json.load(f)
            for name in _ENV_FIELDS:
                if creds.get(name):
                    values[name] = creds[name]
            # Older files used "token" for the access credential
            if not values.get("access_token") and creds.get("token"):
                values["access_token"] = creds["token"]
            if isinstance(creds.get("tables"), list):
                values["tables"] = [str(t) for t in creds["tables"]]
            for name in _NUMERIC_ENV_FIELDS:
                if creds.get(name) is not None:
                    values[name] = creds[name]
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    for name, env_var in _ENV_FIELDS.items():
        if not values.get(name) and os.environ.get(env_var):
            values[name] = os.environ[env_var]

    for name, (env_var, cast) in _NUMERIC_ENV_FIELDS.items():
        raw = os.environ.get(env_var)
        if name not in values and raw:
            try:
                values[name] = cast(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {env_var}={raw!r}")

    if os.environ.get("OPSYNC_TABLES") and "tables" not in values:
        values["tables"] = [t.strip() for t in os.environ["OPSYNC_TABLES"].split(",") if t.strip()]

    if values.get("server_url"):
        values["server_url"] = validate_server_url(values["server_url"])

    return SyncConfig(**values)


def save_credentials(config: SyncConfig, credentials_path: Optional[Path] = None) -> Path:
    """Persist the remote settings to the credentials file (mode 0600)."""
    path = credentials_path or get_opsync_home() / "credentials.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {}
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Overwriting unreadable credentials file: {e}")
    data.update(
        {
            "server_url": config.server_url,
            "access_token": config.access_token,
        }
    )
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)
    return path
