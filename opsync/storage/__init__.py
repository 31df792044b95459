"""Local storage for opsync."""

from .schema import SCHEMA_VERSION, validate_table_name
from .sqlite import LocalOperationLog

__all__ = ["LocalOperationLog", "SCHEMA_VERSION", "validate_table_name"]
