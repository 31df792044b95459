"""Sync key CLI commands.

- opsync keys generate - Generate the device's first sync key
- opsync keys show - Show the active key's fingerprint
- opsync keys export - Print the key for transfer to another device
- opsync keys import - Install a key exported on another device
- opsync keys verify - Check that a key string is usable
- opsync keys rotate - Replace the key and re-push all local data
"""

import json
import sys
from typing import TYPE_CHECKING

from opsync.crypto import generate_key, import_key, verify_key
from opsync.errors import InvalidKeyFormat, RotationNotConfirmed, SyncInProgressError

if TYPE_CHECKING:
    import argparse

    from opsync import OpSync


def cmd_keys(args: "argparse.Namespace", s: "OpSync") -> None:
    """Handle keys subcommands."""
    action = getattr(args, "keys_action", None)

    if action == "generate":
        _generate(args, s)
    elif action == "show":
        _show(args, s)
    elif action == "export":
        _export(args, s)
    elif action == "import":
        _import(args, s)
    elif action == "verify":
        _verify(args, s)
    elif action == "rotate":
        _rotate(args, s)
    else:
        print("Usage: opsync keys <generate|show|export|import|verify|rotate>")
        print()
        print("Commands:")
        print("  generate  Generate a new sync key")
        print("  show      Show the active key fingerprint")
        print("  export    Print the key for another device")
        print("  import    Install a key from another device")
        print("  verify    Check a key string")
        print("  rotate    Replace the key (re-pushes all local data)")


def _generate(args: "argparse.Namespace", s: "OpSync") -> None:
    if s.keys.has_key():
        print("✗ A sync key is already configured")
        print("  Use 'opsync keys rotate' to replace it")
        return
    key = generate_key()
    s.keys.store(key)
    print("✓ Generated sync key")
    print(f"  Fingerprint: {key.key_hash}")
    print()
    print("Copy it to your other devices with 'opsync keys export'.")


def _show(args: "argparse.Namespace", s: "OpSync") -> None:
    key = s.keys.load()
    if key is None:
        print("✗ No sync key configured")
        print("  Use 'opsync keys generate' or 'opsync keys import'")
        return
    if getattr(args, "json", False):
        print(json.dumps({"key_hash": key.key_hash, "retired": s.keys.retired_hashes()}, indent=2))
        return
    print(f"Fingerprint: {key.key_hash}")
    retired = s.keys.retired_hashes()
    if retired:
        print(f"Retired: {', '.join(retired)}")


def _export(args: "argparse.Namespace", s: "OpSync") -> None:
    key = s.keys.load()
    if key is None:
        print("✗ No sync key configured")
        sys.exit(1)
    # Bare output for piping
    print(key.export())


def _read_key_text(args: "argparse.Namespace") -> str:
    text = getattr(args, "key", None)
    if not text or text == "-":
        text = sys.stdin.readline()
    return text.strip()


def _import(args: "argparse.Namespace", s: "OpSync") -> None:
    try:
        key = import_key(_read_key_text(args))
    except InvalidKeyFormat as e:
        print(f"✗ {e}")
        sys.exit(1)

    current = s.keys.load()
    if current is not None and current.raw != key.raw:
        print(f"✗ A different sync key ({current.key_hash}) is already configured")
        print("  Use 'opsync keys rotate --key <key> --yes' to replace it")
        sys.exit(1)
    s.keys.store(key)
    print(f"✓ Imported sync key {key.key_hash}")


def _verify(args: "argparse.Namespace", s: "OpSync") -> None:
    if verify_key(_read_key_text(args)):
        print("✓ Key is valid")
    else:
        print("✗ Key is not a valid sync key")
        sys.exit(1)


def _rotate(args: "argparse.Namespace", s: "OpSync") -> None:
    confirm = getattr(args, "yes", False)
    if not confirm:
        answer = input(
            "Rotate the sync key? Other devices must import the new key, and "
            "history sealed under the old key becomes unreadable. [y/N] "
        )
        if answer.lower() != "y":
            print("Cancelled")
            return
        confirm = True

    try:
        new_key = import_key(args.key) if getattr(args, "key", None) else generate_key()
        result = s.rotate_key(new_key, confirm=confirm)
    except (InvalidKeyFormat, RotationNotConfirmed, SyncInProgressError) as e:
        print(f"✗ {e}")
        sys.exit(1)

    print("✓ Rotated sync key")
    print(f"  New fingerprint: {new_key.key_hash}")
    if result is not None:
        if result.success:
            print(f"  Re-pushed {result.pushed} operations")
        else:
            print(f"  Re-push failed: {'; '.join(result.errors)}")
            print("  Pending operations will be pushed on the next sync")
