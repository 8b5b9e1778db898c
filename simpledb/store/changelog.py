"""
Schema and change log for SimpleDB.

The settings table holds one row per storage key. Every committed mutation
of that table is recorded in an append-only change log by AFTER INSERT,
AFTER UPDATE and AFTER DELETE triggers, so the log entry is written by the
same transaction as the mutation and no write path can forget to log.

Table schema:
    SimpleSetting:
        - Key TEXT PRIMARY KEY
        - Value TEXT (nullable)

    SimpleChange:
        - Id INTEGER PRIMARY KEY AUTOINCREMENT
        - Key TEXT
        - Op TEXT ('I', 'U', 'D')
        - UnixTimeMs INTEGER (engine clock, milliseconds)

Invariants:
    - Change ids are assigned by the engine and never reused (AUTOINCREMENT)
    - Exactly one change row per committed row mutation
    - Schema installation is idempotent and safe from readers and writers alike

How to change safely:
    - Never rename tables or triggers; existing files depend on them
    - New triggers must use CREATE TRIGGER IF NOT EXISTS
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "SimpleSetting"
CHANGES_TABLE = "SimpleChange"

# Milliseconds since the Unix epoch from the engine's own clock
_ENGINE_NOW_MS = "CAST((julianday('now') - 2440587.5) * 86400000 AS INTEGER)"


class ChangeOp(str, Enum):
    """Mutation recorded in the change log."""

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"


@dataclass(frozen=True)
class ChangeEntry:
    """One row of the change log.

    Attributes:
        id: Monotonic log id
        key: Storage key affected
        op: Mutation kind
        unix_time_ms: Engine timestamp of the mutating transaction
    """

    id: int
    key: str
    op: ChangeOp
    unix_time_ms: int


def _trigger_sql(name: str, event: str, row: str, op: ChangeOp) -> str:
    return f"""
        CREATE TRIGGER IF NOT EXISTS {name}
        AFTER {event} ON {SETTINGS_TABLE}
        BEGIN
            INSERT INTO {CHANGES_TABLE}(Key, Op, UnixTimeMs)
            VALUES ({row}.Key, '{op.value}', {_ENGINE_NOW_MS});
        END;
    """


TRIGGERS = {
    "trg_SimpleSetting_AI": _trigger_sql("trg_SimpleSetting_AI", "INSERT", "NEW", ChangeOp.INSERT),
    "trg_SimpleSetting_AU": _trigger_sql("trg_SimpleSetting_AU", "UPDATE", "NEW", ChangeOp.UPDATE),
    "trg_SimpleSetting_AD": _trigger_sql("trg_SimpleSetting_AD", "DELETE", "OLD", ChangeOp.DELETE),
}


def ensure_wal_mode(conn: sqlite3.Connection) -> bool:
    """Switch the file to WAL journaling if it is not already.

    Best effort: failures are logged and the current journal mode is kept.

    Returns:
        True if the file is in WAL mode afterwards
    """
    try:
        current = conn.execute("PRAGMA journal_mode").fetchone()[0]
        if str(current).lower() != "wal":
            current = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
        return str(current).lower() == "wal"
    except sqlite3.Error as e:
        logger.debug(f"Unable to set WAL mode, continuing with current journal_mode: {e}")
        return False


def try_pragma(conn: sqlite3.Connection, sql: str) -> None:
    """Run a tuning PRAGMA, ignoring failures."""
    try:
        conn.execute(sql).fetchall()
    except sqlite3.Error as e:
        logger.debug(f"PRAGMA failed (ignored): {sql}: {e}")


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the settings table, change log and triggers if absent."""
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {SETTINGS_TABLE} (
            Key TEXT PRIMARY KEY NOT NULL,
            Value TEXT
        )
        """
    )
    ensure_change_tracking(conn)


def ensure_change_tracking(conn: sqlite3.Connection) -> None:
    """Create the change log table and the three triggers if absent."""
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {CHANGES_TABLE} (
            Id INTEGER PRIMARY KEY AUTOINCREMENT,
            Key TEXT,
            Op TEXT,
            UnixTimeMs INTEGER NOT NULL
        )
        """
    )
    for sql in TRIGGERS.values():
        conn.execute(sql)


def max_change_id(conn: sqlite3.Connection) -> int:
    """Highest change id in the log, 0 when empty."""
    row = conn.execute(f"SELECT IFNULL(MAX(Id), 0) FROM {CHANGES_TABLE}").fetchone()
    return int(row[0])


def fetch_change_rows(
    conn: sqlite3.Connection,
    after_id: int,
    limit: int | None = None,
) -> list[tuple]:
    """Raw (Id, Key, Op, UnixTimeMs) rows with id > after_id, ascending."""
    sql = f"SELECT Id, Key, Op, UnixTimeMs FROM {CHANGES_TABLE} WHERE Id > ? ORDER BY Id ASC"
    params: tuple = (after_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (after_id, limit)
    return conn.execute(sql, params).fetchall()


def parse_change_row(row: tuple) -> ChangeEntry:
    """Build a ChangeEntry from a raw log row.

    Raises:
        ValueError: If the Op column is not one of I/U/D
    """
    return ChangeEntry(
        id=int(row[0]),
        key=row[1] or "",
        op=ChangeOp(row[2]),
        unix_time_ms=int(row[3] or 0),
    )


def fetch_changes(
    conn: sqlite3.Connection,
    after_id: int,
    limit: int | None = None,
) -> list[ChangeEntry]:
    """Change log entries with id > after_id, ascending.

    Rows with an unrecognised Op (written by something other than the
    triggers) are logged and left out.

    Args:
        conn: Open connection
        after_id: Exclusive lower bound on the id
        limit: Optional maximum number of rows to read

    Returns:
        Entries in log order
    """
    entries = []
    for row in fetch_change_rows(conn, after_id, limit):
        try:
            entries.append(parse_change_row(row))
        except ValueError as e:
            logger.warning(f"Skipping malformed change log row: {e}", extra={"change_id": row[0]})
    return entries
