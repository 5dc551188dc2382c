"""
Operator CLI for the sync engine.

Inspect sync state and recover dead-letter items and conflicts on a device
database without the application running.

Usage:
    fieldsync status
    fieldsync sync --api-url https://api.example.com
    fieldsync dead-letter list
    fieldsync dead-letter retry <item_id>
    fieldsync dead-letter discard <item_id>
    fieldsync dead-letter clear
    fieldsync conflicts list
    fieldsync conflicts resolve quote <entity_id> --choice accept_remote

Configuration comes from ``--config`` (YAML), otherwise from FIELDSYNC_*
environment variables. FIELDSYNC_API_TOKEN supplies the bearer token.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .config import SyncConfig, get_device_id
from .exceptions import FieldSyncError
from .logging_utils import configure_structured_logging, get_sync_logger
from .store.sqlite import SQLiteLocalStore, SQLiteStoreConfig
from .sync.connection import ConnectionMonitor
from .sync.conflict import Resolution, ResolutionChoice
from .sync.orchestrator import SyncOrchestrator
from .sync.remote import HttpRemoteSyncApi
from .utils import format_timestamp

logger = get_sync_logger("cli")


def _load_config(args: argparse.Namespace) -> SyncConfig:
    config = SyncConfig.from_yaml(args.config) if args.config else SyncConfig.from_env()
    if args.db:
        config.db_path = args.db
    if getattr(args, "api_url", None):
        config.api_base_url = args.api_url
    return config


def _print(data: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, indent=2, default=str))
        return
    if isinstance(data, list):
        for row in data:
            print("  ".join(f"{k}={v}" for k, v in row.items()))
        if not data:
            print("(none)")
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    else:
        print(data)


async def _run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    online = args.command == "sync"

    if online and not config.api_base_url:
        print("Error: --api-url or FIELDSYNC_API_URL is required for sync", file=sys.stderr)
        return 2

    logger.debug(f"Running {args.command} against {config.db_path}")
    store = await SQLiteLocalStore.create(SQLiteStoreConfig(db_path=config.db_path))
    home = Path(config.db_path).parent if config.db_path != ":memory:" else None
    remote = HttpRemoteSyncApi(
        config.api_base_url or "",
        token=args.token or os.environ.get("FIELDSYNC_API_TOKEN"),
        device_id=await get_device_id(home) if online else None,
        timeout_seconds=config.request_timeout_seconds,
    )
    orchestrator = SyncOrchestrator(
        store,
        remote,
        config=config,
        monitor=ConnectionMonitor(debounce_seconds=0, initial_online=online),
    )

    try:
        return await _dispatch(args, orchestrator)
    finally:
        await remote.close()
        await store.close()


async def _dispatch(args: argparse.Namespace, orchestrator: SyncOrchestrator) -> int:
    if args.command == "status":
        snapshot = await orchestrator.get_status()
        data = snapshot.to_dict()
        data["queue"] = (await orchestrator.queue.stats()).to_dict()
        _print(data, args.json)
        return 0

    if args.command == "sync":
        result = await orchestrator.sync_now()
        _print(result.to_dict(), args.json)
        return 0 if result.success else 1

    if args.command == "dead-letter":
        if args.action == "list":
            items = await orchestrator.list_dead_letters()
            _print(
                [
                    {
                        "id": item.id,
                        "entity": f"{item.entity_type}/{item.entity_id}",
                        "operation": item.operation.value,
                        "retries": item.retry_count,
                        "failed_at": format_timestamp(item.failed_at),
                        "error": item.last_error,
                    }
                    for item in items
                ],
                args.json,
            )
        elif args.action == "retry":
            item = await orchestrator.retry_dead_letter(args.item_id)
            _print(f"Re-queued {item.id} at {item.priority.name} priority", args.json)
        elif args.action == "discard":
            await orchestrator.discard_dead_letter(args.item_id)
            _print(f"Discarded {args.item_id}", args.json)
        else:
            count = await orchestrator.queue.clear_dead_letters()
            _print(f"Cleared {count} dead-letter items", args.json)
        return 0

    if args.action == "list":
        conflicts = await orchestrator.list_conflicts()
        _print(
            [
                {
                    "entity": f"{c.entity_type}/{c.entity_id}",
                    "operation": c.local_operation.value,
                    "fields": ",".join(c.conflicting_fields),
                    "remote_version": c.remote.version,
                    "detected_at": format_timestamp(c.detected_at),
                }
                for c in conflicts
            ],
            args.json,
        )
        return 0

    choice = ResolutionChoice(args.choice)
    payload = json.loads(args.payload) if args.payload else None
    entity = await orchestrator.resolve_conflict(
        args.entity_type, args.entity_id, Resolution(choice, payload)
    )
    _print(entity.to_dict(), args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="Inspect and recover the offline sync queue",
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--db", help="SQLite database path")
    parser.add_argument("--token", help="Bearer token (default: FIELDSYNC_API_TOKEN)")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show pending, dead-letter and conflict counts")

    sync = commands.add_parser("sync", help="Run one sync cycle")
    sync.add_argument("--api-url", help="Remote Sync API base URL")

    dead = commands.add_parser("dead-letter", help="Manage dead-letter items")
    dead_actions = dead.add_subparsers(dest="action", required=True)
    dead_actions.add_parser("list")
    dead_actions.add_parser("retry").add_argument("item_id")
    dead_actions.add_parser("discard").add_argument("item_id")
    dead_actions.add_parser("clear")

    conflicts = commands.add_parser("conflicts", help="Manage unresolved conflicts")
    conflict_actions = conflicts.add_subparsers(dest="action", required=True)
    conflict_actions.add_parser("list")
    resolve = conflict_actions.add_parser("resolve")
    resolve.add_argument("entity_type")
    resolve.add_argument("entity_id")
    resolve.add_argument(
        "--choice", required=True, choices=[c.value for c in ResolutionChoice]
    )
    resolve.add_argument("--payload", help="Merged payload as JSON (for --choice merged)")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_structured_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        code = asyncio.run(_run(args))
    except FieldSyncError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nCancelled.")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
