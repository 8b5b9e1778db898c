"""
Key-value settings store over a single SQLite file.

SimpleDatabase stores typed values under namespaced keys:
- Writes go through a WriteSerializer (cross-process lock, in-process lock,
  busy/locked retry, one transaction per upsert)
- Reads open a fresh read-only connection each time and never take the
  write locks; WAL journaling lets them run alongside a writer
- Triggers record every mutation in the change log, which ChangeFeed tails

Invariants:
    - At most one row per storage key; writes are upserts
    - One change log entry per committed write, in the same transaction
    - Read-only connections are never shared across operations

How to change safely:
    - Route every new write through self._writer().transaction()
    - Route every new read through self._execute_read()
    - Test with two instances on one file, not just one
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..config import StoreSettings
from ..errors import StoreNotOpenError, StoreOpenError
from .changelog import (
    SETTINGS_TABLE,
    ChangeEntry,
    create_schema,
    ensure_wal_mode,
    fetch_changes,
    max_change_id,
    try_pragma,
)
from .keyspace import Keyspace, ValueCodec, zero_value
from .serializer import WriteSerializer, retry_on_busy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING: Any = object()


@dataclass(frozen=True)
class Setting:
    """A stored row.

    Attributes:
        key: Storage key (prefix + logical key + suffix, or the raw key)
        value: Stored text, None for NULL
    """

    key: str
    value: str | None


class SimpleDatabase:
    """Durable key-value settings store with change tracking.

    Thread safety:
        One instance can be shared by any number of threads. Any number of
        instances, in any number of processes, can open the same file.

    Example:
        >>> db = SimpleDatabase.create("/tmp/app/settings.db", prefix="app.")
        >>> db.set_value("theme", "dark")
        >>> db.get_value("theme")
        'dark'
        >>> db.get_value("window", WindowState, set_default=True)
        WindowState(width=0, height=0)
    """

    def __init__(
        self,
        prefix: str | None = None,
        suffix: str | None = None,
        settings: StoreSettings | None = None,
        codec: ValueCodec | None = None,
    ) -> None:
        """Initialize a closed store.

        Args:
            prefix: Key prefix (overrides settings.key_prefix)
            suffix: Key suffix (overrides settings.key_suffix)
            settings: Store settings (loaded from env if not provided)
            codec: Structured value codec (JSON via pydantic if not provided)
        """
        self.settings = settings or StoreSettings()
        self.keyspace = Keyspace(
            prefix if prefix is not None else self.settings.key_prefix,
            suffix if suffix is not None else self.settings.key_suffix,
            codec,
        )
        self._path: Path | None = None
        self._serializer: WriteSerializer | None = None
        self._observers: list[Callable[[str], None]] = []

    @classmethod
    def create(
        cls,
        db_path: str | Path,
        prefix: str | None = None,
        suffix: str | None = None,
        settings: StoreSettings | None = None,
        codec: ValueCodec | None = None,
    ) -> SimpleDatabase:
        """Create a store and open it at db_path.

        Raises:
            StoreOpenError: If the file cannot be opened
        """
        db = cls(prefix, suffix, settings, codec)
        db.open(db_path)
        return db

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._serializer is not None and self._serializer.is_open and self._path is not None

    @property
    def path(self) -> Path | None:
        return self._path

    def open(self, db_path: str | Path) -> None:
        """Open or create the database file.

        Creates the parent directory, switches the file to WAL mode and
        installs the settings table, change log and triggers. Re-opening an
        open store closes the previous connection first.

        Raises:
            StoreOpenError: If the file cannot be opened. The store is left closed.
        """
        if not db_path or not str(db_path).strip():
            raise StoreOpenError("Database path is empty", path=str(db_path))

        if self._serializer is not None:
            self.close()

        conn: sqlite3.Connection | None = None
        try:
            path = Path(db_path).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(
                str(path),
                timeout=self.settings.write_busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
                check_same_thread=False,  # Guarded by the serializer's lock
            )
            ensure_wal_mode(conn)
            retry_on_busy(
                lambda: create_schema(conn),
                max_retries=self.settings.max_retries,
                initial_delay_ms=self.settings.initial_backoff_ms,
                max_delay_ms=self.settings.max_backoff_ms,
            )
            serializer = WriteSerializer(path, conn, self.settings)
        except Exception as e:
            if conn is not None:
                conn.close()
            self._path = None
            self._serializer = None
            logger.error(f"Failed to open SimpleDatabase at {db_path}", exc_info=True)
            raise StoreOpenError(f"Failed to open database at {db_path}: {e}", path=str(db_path)) from e

        self._path = path
        self._serializer = serializer
        logger.info("Opened settings database", extra={"path": str(path)})

    def close(self) -> None:
        """Close the read-write connection. Safe to call more than once."""
        serializer, self._serializer = self._serializer, None
        path, self._path = self._path, None
        if serializer is not None:
            serializer.close()
            logger.info("Closed settings database", extra={"path": str(path)})

    def __enter__(self) -> SimpleDatabase:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Typed API
    # ------------------------------------------------------------------

    def storage_key(self, key: str, raw_key: bool = False) -> str:
        return self.keyspace.storage_key(key, raw_key)

    def get_value(
        self,
        key: str,
        shape: Any = str,
        default: Any = _MISSING,
        set_default: bool = False,
        tolerate_errors: bool = False,
        raw_key: bool = False,
    ) -> Any:
        """Get the value stored under key.

        Args:
            key: Logical key
            shape: Type to decode into (str, int, float, bool or any structured type)
            default: Value returned when the key is missing (zero value of shape if omitted)
            set_default: Store the default when the key is missing
            tolerate_errors: Return the zero value of shape on malformed payloads
            raw_key: Bypass prefix/suffix

        Returns:
            Decoded value, or the default

        Raises:
            StoreNotOpenError: If the store is not open
            DecodeError: If the payload is malformed and errors are not tolerated
        """
        setting = self.select_setting(key, raw_key)
        if setting is None:
            value = zero_value(shape) if default is _MISSING else default
            if set_default:
                self.set_value(key, value, shape=shape, raw_key=raw_key)
            return value

        return self.keyspace.decode(setting.value, shape, tolerate_errors)

    def get_values(
        self,
        keys: Iterable[str],
        shape: Any = str,
        tolerate_errors: bool = False,
        raw_key: bool = False,
    ) -> dict[str, Any]:
        """Get several values in one query.

        Returns:
            Mapping from logical key to decoded value, for keys that exist
        """
        by_storage_key = {self.storage_key(k, raw_key): k for k in keys if k}
        rows = self._select_by_storage_keys(list(by_storage_key))
        return {
            by_storage_key[row.key]: self.keyspace.decode(row.value, shape, tolerate_errors)
            for row in rows
        }

    def get_all_values(self, shape: Any = str, tolerate_errors: bool = False) -> list[Any]:
        """Decode every stored value as shape, skipping empty rows."""
        values = []
        for row in self.select_all_settings():
            if not row.value:
                continue
            value = self.keyspace.decode(row.value, shape, tolerate_errors)
            if value is not None:
                values.append(value)
        return values

    def set_value(self, key: str, value: Any, shape: Any = None, raw_key: bool = False) -> None:
        """Store value under key, replacing any previous value.

        Args:
            key: Logical key
            value: Value to store
            shape: Declared type of value (type(value) if omitted)
            raw_key: Bypass prefix/suffix

        Raises:
            StoreNotOpenError: If the store is not open
            WriteContentionError: If the database stayed busy past all retries
        """
        storage_key = self.storage_key(key, raw_key)
        text = self.keyspace.encode(value, shape)

        self._writer().transaction(
            lambda conn: conn.execute(
                f"""
                INSERT INTO {SETTINGS_TABLE} (Key, Value) VALUES (?, ?)
                ON CONFLICT(Key) DO UPDATE SET Value = excluded.Value
                """,
                (storage_key, text),
            )
        )
        logger.debug("Stored setting", extra={"key": storage_key})
        self._notify(key)

    def delete_setting(self, key: str, raw_key: bool = False) -> int:
        """Delete the row for key.

        Returns:
            Number of rows deleted (0 or 1)
        """
        storage_key = self.storage_key(key, raw_key)
        deleted = self._writer().transaction(
            lambda conn: conn.execute(
                f"DELETE FROM {SETTINGS_TABLE} WHERE Key = ?", (storage_key,)
            ).rowcount
        )
        logger.debug("Deleted setting", extra={"key": storage_key, "rows": deleted})
        self._notify(key)
        return deleted

    def exists_setting(self, key: str, raw_key: bool = False) -> bool:
        return self.select_setting(key, raw_key) is not None

    # ------------------------------------------------------------------
    # Row API
    # ------------------------------------------------------------------

    def select_setting(self, key: str, raw_key: bool = False) -> Setting | None:
        """Return the row for key, or None."""
        storage_key = self.storage_key(key, raw_key)

        def query(conn: sqlite3.Connection) -> Setting | None:
            row = conn.execute(
                f"SELECT Key, Value FROM {SETTINGS_TABLE} WHERE Key = ?", (storage_key,)
            ).fetchone()
            return Setting(row[0], row[1]) if row else None

        return self._execute_read(query)

    def select_all_settings(self) -> list[Setting]:
        return self._execute_read(
            lambda conn: [
                Setting(row[0], row[1])
                for row in conn.execute(f"SELECT Key, Value FROM {SETTINGS_TABLE}").fetchall()
            ]
        )

    def select_settings_by_keys(self, keys: Iterable[str], raw_key: bool = False) -> list[Setting]:
        """Return the rows for the given logical keys in one query."""
        return self._select_by_storage_keys([self.storage_key(k, raw_key) for k in keys if k])

    def _select_by_storage_keys(self, storage_keys: list[str]) -> list[Setting]:
        if not storage_keys:
            return []

        placeholders = ",".join("?" for _ in storage_keys)
        return self._execute_read(
            lambda conn: [
                Setting(row[0], row[1])
                for row in conn.execute(
                    f"SELECT Key, Value FROM {SETTINGS_TABLE} WHERE Key IN ({placeholders})",
                    storage_keys,
                ).fetchall()
            ]
        )

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------

    def max_change_id(self) -> int:
        return self._execute_read(max_change_id)

    def read_changes(self, after_id: int = 0, limit: int | None = None) -> list[ChangeEntry]:
        """Change log entries after after_id, in log order."""
        return self._execute_read(lambda conn: fetch_changes(conn, after_id, limit))

    # ------------------------------------------------------------------
    # In-process observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: Callable[[str], None]) -> None:
        """Call observer(logical_key) after every set/delete made through this instance."""
        self._observers.append(observer)

    def remove_observer(self, observer: Callable[[str], None]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, key: str) -> None:
        for observer in list(self._observers):
            try:
                observer(key)
            except Exception as e:
                logger.error(f"Settings observer failed: {e}", exc_info=True, extra={"key": key})

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _writer(self) -> WriteSerializer:
        serializer = self._serializer
        if serializer is None or not serializer.is_open:
            raise StoreNotOpenError("SimpleDatabase is not open. Call open(...) before writing.")
        return serializer

    @contextmanager
    def _read_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a transient read-only connection with best-effort tuning."""
        path = self._path
        if path is None or not self.is_open:
            raise StoreNotOpenError("SimpleDatabase is not open. Call open(...) before reading.")

        conn = sqlite3.connect(
            f"{path.as_uri()}?mode=ro",
            uri=True,
            timeout=self.settings.read_busy_timeout_ms / 1000.0,
        )
        with closing(conn):
            try_pragma(conn, f"PRAGMA cache_size = {int(self.settings.read_cache_size)}")
            try_pragma(conn, f"PRAGMA mmap_size = {int(self.settings.read_mmap_size)}")
            yield conn

    def _execute_read(self, func: Callable[[sqlite3.Connection], T]) -> T:
        with self._read_connection() as conn:
            return func(conn)
