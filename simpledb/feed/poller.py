"""
Polling change feed for SimpleDB.

A ChangeFeed tails the SimpleChange log written by the settings triggers and
calls one subscriber per new entry, in log order, from a background thread.
Writers never know the feed exists.

Lifecycle:
    CONSTRUCTED --start()--> RUNNING --cancel/dispose--> STOPPED

    Stopping is terminal; a stopped feed cannot be restarted.

Invariants:
    - Callbacks fire in strictly increasing log id order
    - The cursor only moves forward, so no entry is delivered twice
    - Entries present at construction are delivered only with replay_existing
    - A faulting callback is logged and its entry skipped (the cursor advances)
    - Engine errors while polling are logged and retried on a fresh connection
    - Log rows with an unknown operation tag are logged and skipped
    - Cancellation wakes the inter-poll sleep within _CANCEL_CHECK_S

How to change safely:
    - Keep cursor updates on the poll thread only
    - Keep cancellation cooperative; never interrupt a callback
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..config import FeedSettings
from ..errors import ChangeFeedError
from ..store.changelog import (
    ChangeOp,
    create_schema,
    ensure_wal_mode,
    fetch_change_rows,
    max_change_id,
    parse_change_row,
)
from ..store.serializer import retry_on_busy

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, ChangeOp], None]

# Engine busy timeout for the feed's own connections
_BUSY_TIMEOUT_S = 5.0

# Longest stretch the inter-poll sleep goes without checking an external cancel event
_CANCEL_CHECK_S = 0.05


class FeedState(Enum):
    CONSTRUCTED = "constructed"
    RUNNING = "running"
    STOPPED = "stopped"


class Subscription:
    """Handle returned by ChangeFeed.start(); disposing it stops the feed.

    dispose() may be called any number of times; only the first call acts.
    """

    def __init__(self, dispose: Callable[[], None]) -> None:
        self._dispose: Callable[[], None] | None = dispose
        self._lock = threading.Lock()

    @property
    def disposed(self) -> bool:
        return self._dispose is None

    def dispose(self) -> None:
        with self._lock:
            dispose, self._dispose = self._dispose, None
        if dispose is not None:
            dispose()

    close = dispose

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()


class ChangeFeed:
    """Tails the change log of one database file.

    Attributes:
        db_path: Database file being tailed
        poll_interval: Seconds between polls
        last_id: Highest log id already delivered (the cursor)

    Example:
        >>> feed = ChangeFeed("/tmp/app/settings.db", poll_interval_ms=300)
        >>> sub = feed.start(lambda key, op: print(key, op.value))
        >>> ...
        >>> sub.dispose()
    """

    def __init__(
        self,
        db_path: str | Path,
        poll_interval_ms: int | None = None,
        replay_existing: bool | None = None,
        settings: FeedSettings | None = None,
    ) -> None:
        """Initialize the feed and position its cursor.

        Makes sure the settings table, change log and triggers exist, so a
        feed may be created before any writer has opened the file.

        Args:
            db_path: Database file to tail
            poll_interval_ms: Delay between polls (overrides settings)
            replay_existing: Start from id 0 instead of the current end of the log
            settings: Feed settings (loaded from env if not provided)

        Raises:
            ValueError: If db_path is blank
            sqlite3.Error: If the file cannot be opened
        """
        if db_path is None or not str(db_path).strip():
            raise ValueError("db_path cannot be empty")

        self.settings = settings or FeedSettings()
        self.db_path = Path(db_path).expanduser().resolve()
        self.poll_interval = (
            poll_interval_ms if poll_interval_ms is not None else self.settings.poll_interval_ms
        ) / 1000.0
        replay = self.settings.replay_existing if replay_existing is None else replay_existing

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            ensure_wal_mode(conn)
            retry_on_busy(lambda: create_schema(conn))
            self._last_id = 0 if replay else max_change_id(conn)
        finally:
            conn.close()

        self._state = FeedState.CONSTRUCTED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._external_cancel: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def last_id(self) -> int:
        return self._last_id

    @property
    def state(self) -> FeedState:
        return self._state

    def start(
        self,
        on_change: ChangeCallback,
        cancel_event: threading.Event | None = None,
    ) -> Subscription:
        """Start the poll loop on a background thread.

        Args:
            on_change: Called as on_change(key, op) for each new log entry
            cancel_event: Optional external cancellation signal, also checked during the inter-poll sleep

        Returns:
            Subscription whose dispose() stops the loop

        Raises:
            TypeError: If on_change is not callable
            ChangeFeedError: If the feed was already started or stopped
        """
        if not callable(on_change):
            raise TypeError("on_change must be callable")

        with self._state_lock:
            if self._state is not FeedState.CONSTRUCTED:
                raise ChangeFeedError(f"ChangeFeed cannot be started from state {self._state.value}")
            self._state = FeedState.RUNNING
            self._external_cancel = cancel_event
            self._thread = threading.Thread(
                target=self._loop,
                args=(on_change,),
                name=f"simpledb-feed-{self.db_path.name}",
                daemon=True,
            )
            self._thread.start()

        logger.info(
            "Started change feed",
            extra={"path": str(self.db_path), "last_id": self._last_id},
        )
        return Subscription(self.stop)

    def stop(self) -> None:
        """Signal the loop to exit and wait (bounded) for it."""
        self._stop_event.set()

        with self._state_lock:
            thread = self._thread
            if thread is None:
                self._state = FeedState.STOPPED
                return

        if thread is not threading.current_thread():
            thread.join(self.settings.dispose_timeout_ms / 1000.0)
            if thread.is_alive():
                logger.warning(
                    "Change feed loop did not exit within dispose timeout",
                    extra={"path": str(self.db_path)},
                )

    close = stop

    def __enter__(self) -> ChangeFeed:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _cancelled(self) -> bool:
        if self._stop_event.is_set():
            return True
        external = self._external_cancel
        return external is not None and external.is_set()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(
            str(self.db_path),
            timeout=_BUSY_TIMEOUT_S,
            isolation_level=None,
            check_same_thread=False,
        )

    def _sleep(self) -> None:
        """Wait one poll interval, returning early once cancelled."""
        deadline = time.monotonic() + self.poll_interval
        while not self._cancelled():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop_event.wait(min(remaining, _CANCEL_CHECK_S))

    def _deliver(self, row: tuple, on_change: ChangeCallback) -> None:
        """Hand one log row to the callback and move the cursor past it."""
        try:
            entry = parse_change_row(row)
        except ValueError as e:
            logger.warning(
                f"Skipping malformed change log row: {e}",
                extra={"change_id": row[0], "path": str(self.db_path)},
            )
            self._last_id = int(row[0])
            return

        try:
            on_change(entry.key, entry.op)
        except Exception as e:
            logger.error(
                f"Change feed callback failed, skipping entry: {e}",
                exc_info=True,
                extra={"change_id": entry.id, "key": entry.key},
            )
        self._last_id = entry.id

    def _loop(self, on_change: ChangeCallback) -> None:
        conn: sqlite3.Connection | None = None
        try:
            while not self._cancelled():
                try:
                    if conn is None:
                        conn = self._connect()
                    rows = fetch_change_rows(conn, self._last_id)
                except sqlite3.Error as e:
                    logger.warning(
                        f"Change feed poll failed: {e}",
                        extra={"path": str(self.db_path), "last_id": self._last_id},
                    )
                    # Reconnect on the next tick
                    if conn is not None:
                        conn.close()
                        conn = None
                    rows = []

                for row in rows:
                    if self._cancelled():
                        break
                    self._deliver(row, on_change)

                self._sleep()
        finally:
            if conn is not None:
                conn.close()
            with self._state_lock:
                self._state = FeedState.STOPPED
            logger.info(
                "Stopped change feed",
                extra={"path": str(self.db_path), "last_id": self._last_id},
            )
