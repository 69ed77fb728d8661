#!/usr/bin/env python
"""
reply-sync CLI.

Usage:
    reply-sync                          # one bounded run (same as `run`)
    reply-sync run                      # backfill if unfinished, then one live pass
    reply-sync poll                     # live tail only
    reply-sync status                   # show persisted cursors and reply counts
    reply-sync init-db                  # apply schema.sql
    reply-sync repair-tags              # fill NULL tags from Intercom
    reply-sync repair-user-fields       # fill NULL end-user identity columns

Configuration comes from the environment (and a .env file if present); see
reply_sync.config for the knobs and their defaults.
"""

import argparse
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import ConfigurationError, SyncSettings
from .db import ReplyStorage, SinkError, SyncStateStore, get_connection, init_db
from .intercom_client import IntercomClient
from .logging_utils import configure_safe_logging
from .repair import DEFAULT_BATCH_SIZE, DEFAULT_MAX_ROWS, backfill_tags, backfill_user_fields
from .sync_controller import SyncController
from .sync_state import StateCorruptionError, SyncStateRepository

logger = logging.getLogger("reply_sync")


def _finish(summary) -> None:
    backfill = summary.backfill.describe() if summary.backfill else "not run"
    live = summary.live.describe() if summary.live else "not run"
    logger.info(f"Sync finished: backfill=[{backfill}] live=[{live}]")


def cmd_run(args, settings: SyncSettings) -> None:
    """One bounded run: backfill, hand-off, live pass."""
    client = IntercomClient.from_settings(settings)
    with get_connection(settings.database_url) as conn:
        controller = SyncController(client, SyncStateStore(conn), ReplyStorage(conn), settings)
        _finish(controller.run())


def cmd_poll(args, settings: SyncSettings) -> None:
    """Live tail only."""
    client = IntercomClient.from_settings(settings)
    with get_connection(settings.database_url) as conn:
        controller = SyncController(client, SyncStateStore(conn), ReplyStorage(conn), settings)
        _finish(controller.poll())


def cmd_status(args, settings: SyncSettings) -> None:
    """Print persisted cursors and reply counts."""
    with get_connection(settings.database_url) as conn:
        repo = SyncStateRepository(SyncStateStore(conn))
        storage = ReplyStorage(conn)
        snapshot = repo.snapshot()
        backfill, live = repo.load()
        total = storage.count_replies()
        latest = storage.latest_reply_at()

    phase = SyncController.current_phase(backfill).value.upper()
    print("\n=== Sync State ===")
    print(f"  Phase:        {phase}")
    for key, value in snapshot.items():
        print(f"  {key:22s}  {value or '-'}")
    if live.in_progress:
        print(f"  Live window open until {live.window_end.isoformat()}")

    print("\n=== Replies ===")
    print(f"  Total rows:   {total:,}")
    print(f"  Latest reply: {latest or '-'}")
    print()


def cmd_init_db(args, settings: SyncSettings) -> None:
    """Apply the schema."""
    init_db(settings.database_url)
    print("Schema applied.")


def cmd_repair_tags(args, settings: SyncSettings) -> None:
    client = IntercomClient.from_settings(settings)
    with get_connection(settings.database_url) as conn:
        stats = backfill_tags(client, ReplyStorage(conn), limit=args.limit)
    print(f"Tag backfill done: {stats.describe()}")


def cmd_repair_user_fields(args, settings: SyncSettings) -> None:
    client = IntercomClient.from_settings(settings)
    with get_connection(settings.database_url) as conn:
        stats = backfill_user_fields(
            client,
            ReplyStorage(conn),
            batch_size=args.batch_size,
            max_rows=args.max_rows,
        )
    print(f"User field backfill done: {stats.describe()}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reply-sync",
        description="Sync Intercom operator replies into PostgreSQL",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.set_defaults(func=cmd_run)

    subparsers = parser.add_subparsers(dest="command", help="Command")

    p_run = subparsers.add_parser("run", help="Backfill if unfinished, then one live pass")
    p_run.set_defaults(func=cmd_run)

    p_poll = subparsers.add_parser("poll", help="Live tail only")
    p_poll.set_defaults(func=cmd_poll)

    p_status = subparsers.add_parser("status", help="Show sync cursors and reply counts")
    p_status.set_defaults(func=cmd_status)

    p_init = subparsers.add_parser("init-db", help="Create tables if missing")
    p_init.set_defaults(func=cmd_init_db)

    p_tags = subparsers.add_parser("repair-tags", help="Fill NULL tags from Intercom")
    p_tags.add_argument("--limit", type=int, help="Maximum conversations to repair")
    p_tags.set_defaults(func=cmd_repair_tags)

    p_users = subparsers.add_parser("repair-user-fields", help="Fill NULL end-user identity columns")
    p_users.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, help="Rows per query")
    p_users.add_argument("--max-rows", type=int, default=DEFAULT_MAX_ROWS, help="Stop after this many rows")
    p_users.set_defaults(func=cmd_repair_user_fields)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_safe_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = SyncSettings.from_env()
        args.func(args, settings)
    except (ConfigurationError, StateCorruptionError) as e:
        logger.error(f"Fatal: {e}")
        return 1
    except SinkError as e:
        logger.error(f"Sink failure, cursor not advanced: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
