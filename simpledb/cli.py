"""
Command-line tool for SimpleDB.

Reads, writes and watches one settings file:
- get: Print the value stored under a key
- set: Store a value under a key
- delete: Remove a key
- list: Print every stored row
- watch: Print changes as they are logged

Usage:
    simpledb --db settings.db set theme dark
    simpledb --db settings.db get theme
    simpledb --db settings.db watch --replay

Exit codes:
    0 on success, 1 when `get` finds no value, 2 on store errors

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output one line per row/change for scripting
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Sequence, TextIO

import json_log_formatter

from .config import FeedSettings, LoggingSettings, StoreSettings
from .errors import SimpleDbError
from .feed.poller import ChangeFeed
from .store.changelog import ChangeOp
from .store.database import SimpleDatabase

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2


def setup_logging(config: LoggingSettings) -> None:
    """Configure root logging from settings.

    Args:
        config: Logging settings
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Lock acquisition chatter
    logging.getLogger("filelock").setLevel(logging.WARNING)


class SimpleDbCLI:
    """Commands over one open store.

    Example:
        >>> with SimpleDatabase.create("settings.db") as db:
        ...     SimpleDbCLI(db).set("theme", "dark")
    """

    def __init__(self, db: SimpleDatabase, out: TextIO | None = None) -> None:
        self.db = db
        self.out = out or sys.stdout

    def get(self, key: str, raw_key: bool = False) -> int:
        setting = self.db.select_setting(key, raw_key)
        if setting is None or setting.value is None:
            return EXIT_NOT_FOUND
        print(setting.value, file=self.out)
        return EXIT_OK

    def set(self, key: str, value: str, raw_key: bool = False) -> int:
        self.db.set_value(key, value, raw_key=raw_key)
        return EXIT_OK

    def delete(self, key: str, raw_key: bool = False) -> int:
        deleted = self.db.delete_setting(key, raw_key)
        print(f"Deleted {deleted} row(s)", file=self.out)
        return EXIT_OK

    def list(self) -> int:
        for setting in sorted(self.db.select_all_settings(), key=lambda s: s.key):
            print(f"{setting.key}={setting.value if setting.value is not None else ''}", file=self.out)
        return EXIT_OK

    def watch(
        self,
        feed_settings: FeedSettings,
        stop: threading.Event,
        max_events: int | None = None,
    ) -> int:
        """Print changes until stop is set or max_events changes were seen."""
        path = self.db.path
        if path is None:
            return EXIT_ERROR

        seen = 0

        def on_change(key: str, op: ChangeOp) -> None:
            nonlocal seen
            print(f"{op.name} {key}", file=self.out, flush=True)
            seen += 1
            if max_events is not None and seen >= max_events:
                stop.set()

        feed = ChangeFeed(path, settings=feed_settings)
        with feed.start(on_change, cancel_event=stop):
            stop.wait()
        return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="simpledb",
        description="SimpleDB settings store tool",
    )
    parser.add_argument("--db", required=True, help="Path to the settings database file")
    parser.add_argument("--prefix", default=None, help="Key prefix")
    parser.add_argument("--suffix", default=None, help="Key suffix")
    parser.add_argument("--raw-key", action="store_true", help="Bypass prefix/suffix")
    parser.add_argument("--log-level", default=None, help="Logging level")
    parser.add_argument("--log-format", choices=["text", "json"], default=None, help="Log format")

    subparsers = parser.add_subparsers(dest="command", required=True)

    get_parser = subparsers.add_parser("get", help="Print the value of a key")
    get_parser.add_argument("key")

    set_parser = subparsers.add_parser("set", help="Store a value")
    set_parser.add_argument("key")
    set_parser.add_argument("value")

    delete_parser = subparsers.add_parser("delete", help="Delete a key")
    delete_parser.add_argument("key")

    subparsers.add_parser("list", help="Print all rows")

    watch_parser = subparsers.add_parser("watch", help="Print changes as they happen")
    watch_parser.add_argument("--replay", action="store_true", help="Replay the whole history first")
    watch_parser.add_argument("--interval-ms", type=int, default=None, help="Poll interval")
    watch_parser.add_argument("--max-events", type=int, default=None, help="Exit after N changes")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)

    overrides = {}
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format
    setup_logging(LoggingSettings(**overrides))

    try:
        with SimpleDatabase.create(args.db, args.prefix, args.suffix, StoreSettings()) as db:
            cli = SimpleDbCLI(db)

            if args.command == "get":
                return cli.get(args.key, args.raw_key)
            elif args.command == "set":
                return cli.set(args.key, args.value, args.raw_key)
            elif args.command == "delete":
                return cli.delete(args.key, args.raw_key)
            elif args.command == "list":
                return cli.list()
            elif args.command == "watch":
                feed_overrides: dict[str, object] = {"replay_existing": args.replay}
                if args.interval_ms is not None:
                    feed_overrides["poll_interval_ms"] = args.interval_ms

                stop = threading.Event()
                previous = {}
                if threading.current_thread() is threading.main_thread():
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        previous[sig] = signal.signal(sig, lambda *_: stop.set())
                try:
                    return cli.watch(FeedSettings(**feed_overrides), stop, args.max_events)
                finally:
                    for sig, handler in previous.items():
                        signal.signal(sig, handler)

    except SimpleDbError as e:
        logger.error(f"{e.code}: {e.message}")
        return EXIT_ERROR

    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
