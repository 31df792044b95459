"""
opsync CLI - encrypted operation-log sync from the command line.

Usage:
    opsync entity put links docs '{"url": "https://example.com"}'
    opsync sync login --server https://sync.example.com --token TOKEN
    opsync keys generate
    opsync sync run
    opsync sync status
"""

import argparse
import logging
import sys
from pathlib import Path

from opsync import OpSync
from opsync.cli.commands import cmd_entity, cmd_keys, cmd_sync
from opsync.config import load_config
from opsync.errors import SyncError

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opsync",
        description="End-to-end encrypted operation-log sync",
    )
    parser.add_argument("--db", help="Path to the local database", default=None)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # entity
    p_entity = subparsers.add_parser("entity", help="Read and write local records")
    entity_sub = p_entity.add_subparsers(dest="entity_action")
    entity_put = entity_sub.add_parser("put", help="Create or update a record")
    entity_put.add_argument("table")
    entity_put.add_argument("key", help="Record key (JSON or bare string)")
    entity_put.add_argument("data", help="Record data (JSON)")
    entity_get = entity_sub.add_parser("get", help="Show a record")
    entity_get.add_argument("table")
    entity_get.add_argument("key")
    entity_delete = entity_sub.add_parser("delete", help="Delete a record")
    entity_delete.add_argument("table")
    entity_delete.add_argument("key")
    entity_list = entity_sub.add_parser("list", help="List records of a table")
    entity_list.add_argument("table")
    entity_list.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # sync
    p_sync = subparsers.add_parser("sync", help="Synchronize with the sync server")
    sync_sub = p_sync.add_subparsers(dest="sync_action")
    sync_status = sync_sub.add_parser("status", help="Show sync status and pending counts")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")
    sync_sub.add_parser("run", help="Push then pull")
    sync_sub.add_parser("push", help="Push pending operations")
    sync_sub.add_parser("pull", help="Pull remote operations")
    sync_sub.add_parser("global", help="Run a full cycle (replication and refresh modules)")
    sync_login = sync_sub.add_parser("login", help="Save server URL and access token")
    sync_login.add_argument("--server", required=True, help="Sync server URL")
    sync_login.add_argument("--token", required=True, help="Shared access token")
    sync_watch = sync_sub.add_parser("watch", help="Run global cycles periodically")
    sync_watch.add_argument("--interval", type=int, default=300, help="Seconds between cycles")

    # keys
    p_keys = subparsers.add_parser("keys", help="Manage the sync encryption key")
    keys_sub = p_keys.add_subparsers(dest="keys_action")
    keys_sub.add_parser("generate", help="Generate a new sync key")
    keys_show = keys_sub.add_parser("show", help="Show the key fingerprint")
    keys_show.add_argument("--json", "-j", action="store_true", help="Output as JSON")
    keys_sub.add_parser("export", help="Print the key for another device")
    keys_import = keys_sub.add_parser("import", help="Install an exported key")
    keys_import.add_argument("key", nargs="?", default="-", help="Exported key ('-' reads stdin)")
    keys_verify = keys_sub.add_parser("verify", help="Check an exported key")
    keys_verify.add_argument("key", nargs="?", default="-", help="Exported key ('-' reads stdin)")
    keys_rotate = keys_sub.add_parser("rotate", help="Replace the sync key")
    keys_rotate.add_argument("--key", help="Rotate to this exported key instead of a new one")
    keys_rotate.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("opsync").setLevel(logging.DEBUG)

    try:
        config = load_config()
        if args.db:
            config.db_path = Path(args.db).expanduser()
        s = OpSync(config=config)
    except (ValueError, OSError) as e:
        logger.error(f"Failed to initialize opsync: {e}")
        sys.exit(1)

    try:
        if args.command == "entity":
            cmd_entity(args, s)
        elif args.command == "sync":
            cmd_sync(args, s)
        elif args.command == "keys":
            cmd_keys(args, s)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"Sync error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
