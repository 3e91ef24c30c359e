#!/usr/bin/env python3
"""Command-line interface for packsync.

This module provides CLI commands for editing packing lists, offline or
online. Edits are queued locally and synchronized with the server when it
is reachable. Uses only core/ modules - no Flask dependencies.

Commands:
    create-list <title>                 Create a packing list on the server
    share <list> <user> <level>         Share a list (owner only)
    show <list>                         Show a list as the user sees it
    add-item <list> <name>              Queue an added item
    update-item <list> <item>           Queue a change to an item
    remove-item <list> <item>           Queue removal of an item
    reorder <list> <item>...            Queue a new item ordering
    undo <op>                           Withdraw a queued change
    pending [list]                      List queued changes
    sync [list]                         Submit queued changes now
    conflicts                           List unresolved conflicts
    resolve <list> <choice>             Resolve a conflict
    watch                               Keep syncing in the background
    status                              Show connectivity and queue status
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from packsync.core.config import Config
from packsync.core.engine import SyncEngine
from packsync.core.errors import (
    ForbiddenError,
    PackSyncError,
    TransientError,
    UnknownEntityError,
)
from packsync.core.mediator import Resolution, diff_snapshots
from packsync.core.models import ConflictRecord, Notice, ProjectedSnapshot, QueueEntry
from packsync.core.timestamp_utils import format_timestamp
from packsync.core.validation import ValidationError

logger = logging.getLogger(__name__)

# Commands that talk to the server before running
NETWORK_COMMANDS = frozenset([
    "create-list", "share", "show", "add-item", "update-item",
    "remove-item", "reorder", "sync", "resolve", "watch",
])


def print_notice(notice: Notice) -> None:
    """Print a user-visible notice to stderr."""
    print(f"[{notice.kind.value}] {notice.entity_id[:8]}: {notice.message}", file=sys.stderr)


def format_list(projected: ProjectedSnapshot, format_type: str = "text") -> str:
    """Format a projected packing list for display.

    Args:
        projected: Projection to show
        format_type: Output format (text, json)

    Returns:
        Formatted string
    """
    if format_type == "json":
        return json.dumps(projected.to_dict(), indent=2, ensure_ascii=False)

    snapshot = projected.snapshot
    title = snapshot.title or "(untitled)"
    lines = [f"{title} (ID: {snapshot.entity_id}, version {projected.base_version})"]
    if projected.has_pending:
        lines.append(f"{len(projected.pending_op_ids)} change(s) not yet synced")
    if not projected.items:
        lines.append("  (no items)")
    for item in projected.items:
        mark = "x" if item.packed else " "
        line = f"  [{mark}] {item.name} x{item.qty} ({item.category}) {item.id}"
        if item.notes:
            line += f"\n        {item.notes}"
        lines.append(line)
    return "\n".join(lines)


def format_entry(entry: QueueEntry) -> Dict[str, Any]:
    op = entry.operation
    return {
        "op_id": op.op_id,
        "entity_id": op.entity_id,
        "kind": op.kind.value if hasattr(op.kind, "value") else str(op.kind),
        "payload": op.payload,
        "enqueued_at": op.enqueued_at,
        "attempt": op.attempt,
        "status": entry.status.value,
    }


def format_conflict(record: ConflictRecord) -> Dict[str, Any]:
    return {
        "entity_id": record.entity_id,
        "offending_op_id": record.offending_op_id,
        "created_at": record.created_at,
        "message": record.message,
        "remote_version": record.remote_data.version,
        "differences": [d.to_dict() for d in diff_snapshots(record.local_data, record.remote_data)],
    }


def _print_error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


# ===== Commands =====


def cmd_create_list(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Create a packing list on the server.

    Args:
        engine: SyncEngine instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    items = [{"name": name} for name in (args.item or [])]
    try:
        projected = engine.create_list(args.title, items=items)
    except ValidationError as e:
        return _print_error(e.message)
    except TransientError as e:
        return _print_error(f"server unreachable, lists can only be created online ({e})")

    if args.format == "json":
        print(format_list(projected, "json"))
    else:
        print(f"Created list {projected.entity_id}")
    return 0


def cmd_share(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Grant another user access to a packing list."""
    try:
        engine.share_list(args.list_id, args.user_id, args.level)
    except (ValidationError, UnknownEntityError, ForbiddenError, TransientError) as e:
        return _print_error(str(e))
    print(f"Shared {args.list_id} with {args.user_id} as {args.level}")
    return 0


def cmd_show(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Show a packing list including changes not yet synced."""
    try:
        projected = engine.load(args.list_id)
    except (ValidationError, UnknownEntityError, ForbiddenError) as e:
        return _print_error(str(e))
    print(format_list(projected, args.format))
    return 0


def _report_queued(engine: SyncEngine, args: argparse.Namespace, op_id: str, extra: str = "") -> int:
    if args.format == "json":
        data = {"op_id": op_id, "online": engine.connectivity.is_online}
        if extra:
            data["item_id"] = extra
        print(json.dumps(data))
    else:
        print(f"Queued change {op_id}" + (f" (item {extra})" if extra else ""))
    return 0


def cmd_add_item(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Queue an added item."""
    try:
        op = engine.add_item(
            args.list_id,
            args.name,
            category=args.category,
            qty=args.qty,
            packed=args.packed,
            notes=args.notes,
        )
    except ValidationError as e:
        return _print_error(e.message)
    return _report_queued(engine, args, op.op_id, op.payload["item"]["id"])


def cmd_update_item(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Queue a change to an existing item."""
    fields: Dict[str, Any] = {}
    for name in ("name", "category", "qty", "notes"):
        value = getattr(args, name)
        if value is not None:
            fields[name] = value
    if args.packed is not None:
        fields["packed"] = args.packed
    try:
        op = engine.update_item(args.list_id, args.item_id, **fields)
    except ValidationError as e:
        return _print_error(e.message)
    return _report_queued(engine, args, op.op_id)


def cmd_remove_item(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Queue removal of an item."""
    try:
        op = engine.remove_item(args.list_id, args.item_id)
    except ValidationError as e:
        return _print_error(e.message)
    return _report_queued(engine, args, op.op_id)


def cmd_reorder(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Queue a new ordering of items."""
    try:
        op = engine.reorder_items(args.list_id, args.item_ids)
    except ValidationError as e:
        return _print_error(e.message)
    return _report_queued(engine, args, op.op_id)


def cmd_undo(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Withdraw a queued change that has not been submitted yet."""
    try:
        projected = engine.undo(args.op_id)
    except PackSyncError as e:
        return _print_error(str(e))
    if args.format == "json":
        print(format_list(projected, "json"))
    else:
        print(f"Undid change {args.op_id}")
    return 0


def cmd_pending(engine: SyncEngine, args: argparse.Namespace) -> int:
    """List queued changes."""
    entries = engine.pending(args.list_id)
    if args.format == "json":
        print(json.dumps([format_entry(e) for e in entries], indent=2))
        return 0

    if not entries:
        print("No pending changes.")
        return 0
    for entry in entries:
        data = format_entry(entry)
        print(
            f"{data['op_id']} {data['kind']:<14} list {data['entity_id'][:8]} "
            f"queued {format_timestamp(data['enqueued_at'])} "
            f"attempts {data['attempt']}"
        )
    return 0


def cmd_sync(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Submit queued changes now.

    Returns:
        Exit code (0 if every list drained cleanly, 1 otherwise)
    """
    results = engine.sync_now(args.list_id)
    online = engine.connectivity.is_online

    if args.format == "json":
        print(json.dumps({
            "online": online,
            "results": [
                {
                    "entity_id": r.entity_id,
                    "success": r.success,
                    "applied": r.applied,
                    "rejected": r.rejected,
                    "conflict": r.conflict,
                    "skipped": r.skipped,
                    "transient_error": r.transient_error,
                    "errors": r.errors,
                }
                for r in results
            ],
        }, indent=2))
    else:
        if not online:
            print("Server unreachable; changes stay queued.")
        elif not results:
            print("Nothing to sync.")
        for r in results:
            if r.skipped:
                status = "SKIPPED"
            elif r.success:
                status = "OK"
            else:
                status = "INCOMPLETE"
            print(f"  {r.entity_id}: {status} (applied {r.applied}, rejected {r.rejected})")
            if r.conflict:
                print("    conflict: run 'conflicts' and 'resolve'")
            if r.transient_error:
                print(f"    will retry: {r.transient_error}")
            for error in r.errors:
                print(f"    - {error}")

    if not online:
        return 1
    return 0 if all(r.success for r in results) else 1


def cmd_conflicts(engine: SyncEngine, args: argparse.Namespace) -> int:
    """List unresolved conflicts."""
    records = engine.conflicts()
    if args.format == "json":
        print(json.dumps([format_conflict(r) for r in records], indent=2))
        return 0

    if not records:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts ({len(records)}):\n")
    for record in records:
        data = format_conflict(record)
        print(f"  List {record.entity_id} - change {record.offending_op_id[:8]} refused")
        if record.message:
            print(f"    {record.message}")
        for diff in data["differences"]:
            print(f"    {diff['status']:<12} {diff['name']}")
            for name, (mine, theirs) in diff["fields"].items():
                print(f"      {name}: yours={mine!r} server={theirs!r}")
    return 0


def cmd_resolve(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Resolve the conflict of a packing list."""
    if args.choice == "remote":
        resolution = Resolution.accept_remote()
    elif args.choice == "local":
        resolution = Resolution.accept_local()
    else:
        if not args.kind or args.payload is None:
            return _print_error("merge needs --kind and --payload")
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            return _print_error(f"invalid --payload JSON: {e}")
        resolution = Resolution.manual_merge(args.kind, payload)

    try:
        engine.resolve(args.list_id, resolution)
    except PackSyncError as e:
        return _print_error(str(e))
    except ValidationError as e:
        return _print_error(f"{e.field}: {e.message}")
    print(f"Resolved conflict on {args.list_id} with {args.choice}")
    return 0


def cmd_watch(engine: SyncEngine, config: Config, args: argparse.Namespace) -> int:
    """Keep probing the server and flushing queued changes until interrupted."""
    engine.start(
        probe_interval=config.get_probe_interval(),
        background_interval=config.get_background_interval(),
    )
    print("Watching for connectivity; press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping.")
    return 0


def cmd_status(engine: SyncEngine, config: Config, args: argparse.Namespace) -> int:
    """Show connectivity and queue status."""
    engine.check_connectivity()
    stats = engine.stats()
    data = {
        "server_url": config.get_server_url(),
        "requestor_id": config.get_requestor_id(),
        "online": stats["online"],
        "pending_operations": stats["queued_operations"],
        "cached_lists": stats["cached_lists"],
        "conflicts": stats["conflicts"],
    }
    if args.format == "json":
        print(json.dumps(data, indent=2))
    else:
        print(f"Server:    {data['server_url']} ({'online' if data['online'] else 'offline'})")
        print(f"Identity:  {data['requestor_id']}")
        print(f"Pending:   {data['pending_operations']} change(s)")
        print(f"Lists:     {data['cached_lists']} cached")
        print(f"Conflicts: {data['conflicts']}")
    return 0


# ===== Parser =====


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    create_parser = cli_subparsers.add_parser("create-list", help="Create a packing list")
    create_parser.add_argument("title", type=str, help="List title")
    create_parser.add_argument(
        "--item", action="append", help="Initial item name (repeatable)"
    )

    share_parser = cli_subparsers.add_parser("share", help="Share a packing list")
    share_parser.add_argument("list_id", type=str, help="List ID")
    share_parser.add_argument("user_id", type=str, help="Identity to share with")
    share_parser.add_argument("level", choices=["editor", "viewer"], help="Access level")

    show_parser = cli_subparsers.add_parser("show", help="Show a packing list")
    show_parser.add_argument("list_id", type=str, help="List ID")

    add_parser = cli_subparsers.add_parser("add-item", help="Add an item")
    add_parser.add_argument("list_id", type=str, help="List ID")
    add_parser.add_argument("name", type=str, help="Item name")
    add_parser.add_argument("--category", type=str, default="general", help="Category")
    add_parser.add_argument("--qty", type=int, default=1, help="Quantity (default: 1)")
    add_parser.add_argument("--packed", action="store_true", help="Mark as packed")
    add_parser.add_argument("--notes", type=str, default=None, help="Notes")

    update_parser = cli_subparsers.add_parser("update-item", help="Change an item")
    update_parser.add_argument("list_id", type=str, help="List ID")
    update_parser.add_argument("item_id", type=str, help="Item ID")
    update_parser.add_argument("--name", type=str, default=None)
    update_parser.add_argument("--category", type=str, default=None)
    update_parser.add_argument("--qty", type=int, default=None)
    update_parser.add_argument("--notes", type=str, default=None)
    packed_group = update_parser.add_mutually_exclusive_group()
    packed_group.add_argument("--packed", dest="packed", action="store_true", default=None)
    packed_group.add_argument("--unpacked", dest="packed", action="store_false")

    remove_parser = cli_subparsers.add_parser("remove-item", help="Remove an item")
    remove_parser.add_argument("list_id", type=str, help="List ID")
    remove_parser.add_argument("item_id", type=str, help="Item ID")

    reorder_parser = cli_subparsers.add_parser("reorder", help="Reorder items")
    reorder_parser.add_argument("list_id", type=str, help="List ID")
    reorder_parser.add_argument("item_ids", nargs="+", help="Item IDs in the new order")

    undo_parser = cli_subparsers.add_parser("undo", help="Withdraw a queued change")
    undo_parser.add_argument("op_id", type=str, help="Operation ID")

    pending_parser = cli_subparsers.add_parser("pending", help="List queued changes")
    pending_parser.add_argument("list_id", nargs="?", default=None, help="List ID")

    sync_parser = cli_subparsers.add_parser("sync", help="Submit queued changes now")
    sync_parser.add_argument("list_id", nargs="?", default=None, help="List ID")

    cli_subparsers.add_parser("conflicts", help="List unresolved conflicts")

    resolve_parser = cli_subparsers.add_parser("resolve", help="Resolve a conflict")
    resolve_parser.add_argument("list_id", type=str, help="List ID")
    resolve_parser.add_argument(
        "choice",
        choices=["remote", "local", "merge"],
        help="Keep the server version, keep yours, or submit a merged change",
    )
    resolve_parser.add_argument(
        "--kind",
        choices=["add_item", "update_item", "remove_item", "reorder_items"],
        help="Operation kind for merge",
    )
    resolve_parser.add_argument("--payload", type=str, help="Operation payload JSON for merge")

    cli_subparsers.add_parser("watch", help="Keep syncing in the background")
    cli_subparsers.add_parser("status", help="Show connectivity and queue status")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not hasattr(args, 'cli_command') or not args.cli_command:
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    db_path = config.get_database_file()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = SyncEngine.from_config(config, notify=print_notice)

    try:
        if args.cli_command in NETWORK_COMMANDS and args.cli_command != "watch":
            engine.start()

        if args.cli_command == "create-list":
            return cmd_create_list(engine, args)
        elif args.cli_command == "share":
            return cmd_share(engine, args)
        elif args.cli_command == "show":
            return cmd_show(engine, args)
        elif args.cli_command == "add-item":
            return cmd_add_item(engine, args)
        elif args.cli_command == "update-item":
            return cmd_update_item(engine, args)
        elif args.cli_command == "remove-item":
            return cmd_remove_item(engine, args)
        elif args.cli_command == "reorder":
            return cmd_reorder(engine, args)
        elif args.cli_command == "undo":
            return cmd_undo(engine, args)
        elif args.cli_command == "pending":
            return cmd_pending(engine, args)
        elif args.cli_command == "sync":
            return cmd_sync(engine, args)
        elif args.cli_command == "conflicts":
            return cmd_conflicts(engine, args)
        elif args.cli_command == "resolve":
            return cmd_resolve(engine, args)
        elif args.cli_command == "watch":
            return cmd_watch(engine, config, args)
        elif args.cli_command == "status":
            return cmd_status(engine, config, args)
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    finally:
        engine.close()
