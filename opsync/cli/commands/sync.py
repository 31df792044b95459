"""Sync commands for the opsync CLI."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from opsync.config import save_credentials
from opsync.utils import validate_server_url

if TYPE_CHECKING:
    import argparse

    from opsync import OpSync

logger = logging.getLogger(__name__)


def _format_ms(ms: Optional[int]) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def cmd_sync(args: "argparse.Namespace", s: "OpSync") -> None:
    """Handle sync subcommands."""
    action = getattr(args, "sync_action", None) or "status"

    if action == "status":
        _status(args, s)
    elif action == "run":
        _run(args, s)
    elif action == "push":
        _report(s.push(), "push")
    elif action == "pull":
        _report(s.pull(), "pull")
    elif action == "global":
        _global(args, s)
    elif action == "login":
        _login(args, s)
    elif action == "watch":
        _watch(args, s)


def _status(args: "argparse.Namespace", s: "OpSync") -> None:
    info = s.info()
    counts = None
    if s.config.has_remote:
        counts = s.pending_counts()

    if getattr(args, "json", False):
        if counts is not None:
            info["pending_push"] = counts.push
            info["pending_pull"] = counts.pull
        print(json.dumps(info, indent=2, default=str))
        return

    status = info["status"]
    print(f"Client:      {info['client_id']}")
    print(f"Server:      {info['server_url'] or 'not configured'}")
    print(f"Key:         {info['key_hash'] or 'none'}")
    print(f"Status:      {status['status']}")
    if status["last_error"]:
        print(f"Last error:  {status['last_error']}")
    print(f"Last sync:   {_format_ms(status['last_sync_at'])}")
    print(f"Cursor:      {info['cursor']}")
    if counts is not None:
        print(f"Pending:     {counts.push} to push, {counts.pull} to pull")
    else:
        print(f"Pending:     {info['pending']} to push")
    if info["deferred"]:
        print(f"Deferred:    {info['deferred']} (tables not replicated here)")


def _report(result, label: str) -> None:
    if result is None:
        print("✗ A sync is already in progress")
        return
    if result.success:
        print(f"✓ {label.capitalize()} complete: {result.pushed} pushed, {result.pulled} pulled")
        if result.skipped:
            print(f"  {result.skipped} operations sealed with a retired key were skipped")
    else:
        print(f"✗ {label.capitalize()} failed: {'; '.join(result.errors)}")
        sys.exit(1)


def _run(args: "argparse.Namespace", s: "OpSync") -> None:
    _report(s.sync(), "sync")


def _global(args: "argparse.Namespace", s: "OpSync") -> None:
    results = s.global_sync()
    if results is None:
        print("✗ A sync is already in progress")
        return
    for r in results:
        if r.skipped:
            print(f"  - {r.module}: skipped (not configured)")
        elif r.success:
            print(f"  ✓ {r.module}")
        else:
            print(f"  ✗ {r.module}: {r.error}")
    status = s.status()
    print(f"Status: {status.status.value}")
    if status.last_error:
        print(f"  {status.last_error}")


def _login(args: "argparse.Namespace", s: "OpSync") -> None:
    server_url = validate_server_url(args.server)
    if not server_url:
        print(f"✗ Refusing server URL {args.server!r} (use https, or http://localhost)")
        sys.exit(1)
    s.config.server_url = server_url
    s.config.access_token = args.token
    path = save_credentials(s.config)
    print(f"✓ Saved credentials to {path}")


def _watch(args: "argparse.Namespace", s: "OpSync") -> None:
    """Run global cycles on an interval with the stuck-cycle watchdog active."""
    import time

    interval = getattr(args, "interval", 300)
    s.watchdog.start(interval=s.config.watchdog_interval)
    print(f"Syncing every {interval}s (Ctrl-C to stop)")
    try:
        while True:
            s.global_sync()
            status = s.status()
            print(f"[{_format_ms(status.last_sync_at)}] {status.status.value}")
            time.sleep(interval)
    except KeyboardInterrupt:
        print()
    finally:
        s.watchdog.stop()
