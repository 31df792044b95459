"""Small helpers shared by the client packages."""

import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def get_opsync_home() -> Path:
    """Directory holding the local database and credentials.

    Honors ``OPSYNC_HOME``; defaults to ``~/.opsync``.
    """
    override = os.environ.get("OPSYNC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".opsync"


def validate_server_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a sync server URL before the access token is sent to it.

    Rejects non-http/https schemes, URLs without a host, and plaintext HTTP
    to anything but localhost. Returns the URL without a trailing slash, or
    ``None`` if rejected (with a warning logged).
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid server_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid server_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http server_url for security.")
            return None
    return url.rstrip("/")
