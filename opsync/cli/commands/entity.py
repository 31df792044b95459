"""Local entity commands: put, get, delete and list replicated records."""

import json
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import argparse

    from opsync import OpSync


def _parse_json(text: str, field_name: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Bare words are taken as strings
        if field_name == "key":
            return text
        print(f"✗ {field_name} is not valid JSON")
        sys.exit(1)


def cmd_entity(args: "argparse.Namespace", s: "OpSync") -> None:
    action = getattr(args, "entity_action", None)

    if action == "put":
        op = s.put(args.table, _parse_json(args.key, "key"), _parse_json(args.data, "data"))
        if op is None:
            print(f"✓ Saved locally ({args.table} is not replicated)")
        else:
            print(f"✓ Saved ({op.type.value}, pending sync)")
    elif action == "get":
        data = s.get(args.table, _parse_json(args.key, "key"))
        if data is None:
            print("✗ Not found")
            sys.exit(1)
        print(json.dumps(data, indent=2))
    elif action == "delete":
        op = s.delete(args.table, _parse_json(args.key, "key"))
        print("✓ Deleted" + ("" if op is None else " (pending sync)"))
    elif action == "list":
        rows = s.entities(args.table)
        if getattr(args, "json", False):
            print(json.dumps([{"key": k, "data": d} for k, d in rows], indent=2))
            return
        if not rows:
            print(f"No entries in {args.table}")
            return
        for key, data in rows:
            print(f"{json.dumps(key)}: {json.dumps(data)}")
    else:
        print("Usage: opsync entity <put|get|delete|list>")
