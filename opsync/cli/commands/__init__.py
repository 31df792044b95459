"""CLI command handlers."""

from .entity import cmd_entity
from .keys import cmd_keys
from .sync import cmd_sync

__all__ = ["cmd_entity", "cmd_keys", "cmd_sync"]
