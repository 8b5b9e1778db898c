"""
Write serialization for SimpleDB.

All writes to one database file are totally ordered by two lock tiers:

1. A cross-process lock file named after a SHA-256 of the absolute database
   path, so every store pointing at the same file (in any process) contends
   on the same lock and stores on different files never do.
2. An in-process lock guarding the single read-write connection, which the
   serializer owns exclusively.

Inside both locks each write runs in its own BEGIN IMMEDIATE transaction,
retried with exponential backoff while the engine reports busy/locked.

Invariants:
    - The read-write connection is only touched while holding the in-process lock
    - One transaction per logical write; failure rolls back completely
    - Busy/locked is retried, every other engine error propagates immediately

How to change safely:
    - Keep the lock order (process lock, then in-process lock)
    - Test retry changes with a second connection holding BEGIN EXCLUSIVE
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, TypeVar

from filelock import FileLock, Timeout

from ..config import StoreSettings
from ..errors import StoreNotOpenError, WriteContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_NAME_PREFIX = "simpledb_writelock_"

_BUSY_CODES = {sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED}
_BUSY_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def write_lock_name(db_path: str | Path) -> str:
    """Stable lock name for a database file, derived from its absolute path."""
    absolute = str(Path(db_path).expanduser().resolve())
    digest = hashlib.sha256(absolute.encode("utf-8")).hexdigest().upper()
    return f"{LOCK_NAME_PREFIX}{digest}"


def is_busy(exc: BaseException) -> bool:
    """True when an engine error is the transient busy/locked signal."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        # Extended codes (e.g. SQLITE_BUSY_SNAPSHOT) keep the primary code in the low byte
        return (code & 0xFF) in _BUSY_CODES
    message = str(exc).lower()
    return any(m in message for m in _BUSY_MESSAGES)


def retry_on_busy(
    action: Callable[[], T],
    max_retries: int = 5,
    initial_delay_ms: int = 25,
    max_delay_ms: int = 1000,
) -> T:
    """Run action, retrying with exponential backoff on busy/locked.

    Args:
        action: Callable to run
        max_retries: Retries after the first attempt
        initial_delay_ms: First backoff delay
        max_delay_ms: Backoff cap

    Returns:
        The action's result

    Raises:
        WriteContentionError: If every attempt reported busy/locked
    """
    delay = initial_delay_ms
    attempt = 0
    while True:
        try:
            return action()
        except sqlite3.OperationalError as e:
            if not is_busy(e):
                raise
            if attempt >= max_retries:
                raise WriteContentionError(
                    f"Database still busy after {attempt + 1} attempts: {e}",
                    attempts=attempt + 1,
                ) from e
            logger.warning(
                "Database busy, retrying",
                extra={"attempt": attempt + 1, "delay_ms": delay, "error": str(e)},
            )
            time.sleep(delay / 1000.0)
            delay = min(delay * 2, max_delay_ms)
            attempt += 1


def run_in_transaction(conn: sqlite3.Connection, body: Callable[[sqlite3.Connection], T]) -> T:
    """Run body inside BEGIN IMMEDIATE ... COMMIT, rolling back on any failure."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        result = body(conn)
        conn.execute("COMMIT")
        return result
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


class WriteSerializer:
    """Owns the read-write connection of one store and serializes writes to it.

    Thread safety:
        Safe to call from any thread. Writes from separate processes or
        separate store instances on the same file are serialized by the
        lock file; writes within this instance by the in-process lock.

    Example:
        >>> serializer = WriteSerializer(path, conn, StoreSettings())
        >>> serializer.transaction(lambda c: c.execute("DELETE FROM SimpleSetting"))
    """

    def __init__(
        self,
        db_path: str | Path,
        connection: sqlite3.Connection,
        settings: StoreSettings | None = None,
    ) -> None:
        self.settings = settings or StoreSettings()
        self.db_path = Path(db_path)
        self.lock_name = write_lock_name(db_path)

        lock_dir = Path(self.settings.write_lock_dir or tempfile.gettempdir())
        lock_dir.mkdir(parents=True, exist_ok=True)
        self.lock_path = lock_dir / f"{self.lock_name}.lock"

        self._conn: sqlite3.Connection | None = connection
        self._lock = threading.Lock()
        self._process_lock = FileLock(str(self.lock_path))

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        """Run func against the read-write connection under both lock tiers.

        Raises:
            StoreNotOpenError: If the connection has been closed
            WriteContentionError: If busy/locked outlasted the retry budget
        """
        if self._conn is None:
            raise StoreNotOpenError()

        acquired = self._acquire_process_lock()
        try:
            return retry_on_busy(
                lambda: self._run_locked(func),
                max_retries=self.settings.max_retries,
                initial_delay_ms=self.settings.initial_backoff_ms,
                max_delay_ms=self.settings.max_backoff_ms,
            )
        finally:
            if acquired:
                self._process_lock.release()

    def transaction(self, body: Callable[[sqlite3.Connection], T]) -> T:
        """Run body as one retried write transaction."""
        return self.run(lambda conn: run_in_transaction(conn, body))

    def close(self) -> None:
        """Close the read-write connection. Later writes raise StoreNotOpenError."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _run_locked(self, func: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            if self._conn is None:
                raise StoreNotOpenError()
            return func(self._conn)

    def _acquire_process_lock(self) -> bool:
        """Take the cross-process lock; on timeout carry on without it."""
        try:
            self._process_lock.acquire(timeout=self.settings.write_lock_timeout)
            return True
        except Timeout:
            logger.warning(
                "Timed out waiting for cross-process write lock, proceeding without it",
                extra={"lock_path": str(self.lock_path), "timeout": self.settings.write_lock_timeout},
            )
            return False
