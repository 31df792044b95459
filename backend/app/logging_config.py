"""Logging setup for the sync server."""

import logging
import sys

_configured = False


def configure_logging(debug: bool = False) -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root = logging.getLogger("opsync")
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_sync_operation(
    client_id: str | None,
    action: str,
    count: int,
    cursor: int,
    success: bool = True,
    error: str | None = None,
) -> None:
    """One structured line per sync request."""
    logger = logging.getLogger("opsync.server.sync")
    who = client_id or "anonymous"
    if success:
        logger.info(f"{action.upper()} | {who} | {count} ops | cursor={cursor}")
    else:
        logger.warning(f"{action.upper()} FAILED | {who} | {count} ops | cursor={cursor} | {error}")
