"""Command-line interface for Mailboard.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
import sys
from pathlib import Path

import structlog

from mailboard import __version__
from mailboard.config import Settings, get_settings
from mailboard.engine import BoardEngine
from mailboard.exceptions import MailboardError
from mailboard.gmail.client import GmailClient
from mailboard.gmail.sync import GmailSyncClient
from mailboard.store import BoardStore

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailboard", description="Mailboard")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Position commands
    positions_parser = subparsers.add_parser("positions", help="Maintain stored card positions")
    positions_sub = positions_parser.add_subparsers(dest="positions_command", required=True)

    backfill_parser = positions_sub.add_parser(
        "backfill",
        help="Renumber every column's positions to evenly spaced values",
    )
    backfill_parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite board database (default: settings board_db_path)",
    )
    backfill_parser.add_argument(
        "--gap",
        type=int,
        default=None,
        help="Spacing between positions (default: settings position_gap)",
    )

    # Snooze commands
    snoozes_parser = subparsers.add_parser("snoozes", help="Manage snoozed messages")
    snoozes_sub = snoozes_parser.add_subparsers(dest="snoozes_command", required=True)

    release_parser = snoozes_sub.add_parser("release", help="Restore every snooze that has expired")
    release_parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite board database (default: settings board_db_path)",
    )

    # Board commands
    board_parser = subparsers.add_parser("board", help="Inspect the board")
    board_sub = board_parser.add_subparsers(dest="board_command", required=True)

    show_parser = board_sub.add_parser("show", help="Load the board from Gmail and print it")
    show_parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite board database (default: settings board_db_path)",
    )
    show_parser.add_argument("--limit", type=int, default=10, help="Cards shown per column")

    return parser


def _cmd_positions_backfill(args: argparse.Namespace, settings: Settings) -> int:
    db_path: Path = args.db or settings.board_db_path
    gap: int = args.gap or settings.position_gap

    if not db_path.exists():
        print(f"Database not found: {db_path}", file=sys.stderr)
        return 1

    try:
        store = BoardStore(db_path, user_id=settings.user_id)
        store.initialize()
        counts = store.backfill_positions(gap)
    except (sqlite3.Error, OSError, RuntimeError) as exc:
        logger.error("positions_backfill_failed", db_path=str(db_path), error=str(exc))
        print(f"Could not open database {db_path}: {exc}", file=sys.stderr)
        return 1

    for (user_id, column_id), count in counts.items():
        print(f"{user_id}\t{column_id}\t{count}")
    print(f"Backfilled {sum(counts.values())} positions in {len(counts)} columns (gap {gap})")
    return 0


async def _cmd_snoozes_release(args: argparse.Namespace, settings: Settings) -> int:
    db_path: Path = args.db or settings.board_db_path
    store = BoardStore(db_path, user_id=settings.user_id)
    store.initialize()

    gmail = GmailClient(settings)
    await gmail.authenticate()

    sync = GmailSyncClient(gmail, store, settings)
    released = await sync.release_due_snoozes()
    print(f"Released {len(released)} snoozed messages")
    return 0


async def _cmd_board_show(args: argparse.Namespace, settings: Settings) -> int:
    db_path: Path = args.db or settings.board_db_path
    store = BoardStore(db_path, user_id=settings.user_id)
    store.initialize()

    gmail = GmailClient(settings)
    await gmail.authenticate()

    sync = GmailSyncClient(gmail, store, settings)
    engine = await BoardEngine.create(sync=sync, fetch=sync, resolver=sync, store=store, settings=settings)
    results = await engine.start()

    try:
        for column in engine.columns():
            snapshot = engine.snapshot(column.id)
            status = "ok" if results.get(column.id, True) else f"error: {snapshot.load.error}"
            print(f"== {column.title} ({len(snapshot.items)} cards, {status})")
            for item in snapshot.visible()[: args.limit]:
                marker = "*" if item.is_unread else " "
                date_part = item.date.date().isoformat() if item.date else "(no date)"
                print(f" {marker} {date_part}\t{item.sender or '(unknown sender)'}\t{item.subject}")
    finally:
        await engine.stop()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Mailboard CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    logger.info("mailboard_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "positions" and parsed.positions_command == "backfill":
            return _cmd_positions_backfill(parsed, settings)
        if parsed.command == "snoozes" and parsed.snoozes_command == "release":
            return asyncio.run(_cmd_snoozes_release(parsed, settings))
        if parsed.command == "board" and parsed.board_command == "show":
            return asyncio.run(_cmd_board_show(parsed, settings))
    except MailboardError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
