"""
opsync - End-to-end encrypted operation-log synchronization.

Local mutations are appended to a per-device log, sealed with a shared key
and replicated through an append-only remote store.
"""

from importlib.metadata import PackageNotFoundError, version

from .core import OpSync
from .engine import SyncEngine
from .orchestrator import GlobalSyncOrchestrator
from .storage import LocalOperationLog

try:
    __version__ = version("opsync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["OpSync", "SyncEngine", "GlobalSyncOrchestrator", "LocalOperationLog"]
