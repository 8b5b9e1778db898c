"""
Integration tests for SimpleDatabase on real SQLite files.

Tests cover:
- Upsert semantics and typed values
- Change log entries produced by triggers
- Batched and full-table reads
- Open/close lifecycle and not-open misuse
- Busy/locked retry against a second connection
- Concurrent writers on one file
"""

import sqlite3
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import pytest

from simpledb.config import StoreSettings
from simpledb.errors import DecodeError, StoreNotOpenError, StoreOpenError, WriteContentionError
from simpledb.store.changelog import CHANGES_TABLE, ChangeOp
from simpledb.store.database import Setting, SimpleDatabase


@dataclass
class WindowState:
    width: int = 0
    height: int = 0


class TestSimpleDatabase:
    """Tests for SimpleDatabase."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def db_path(self, data_dir):
        return Path(data_dir) / "settings.db"

    @pytest.fixture
    def settings(self, data_dir):
        return StoreSettings(write_lock_dir=data_dir)

    @pytest.fixture
    def db(self, db_path, settings):
        """Create an open store."""
        store = SimpleDatabase.create(db_path, settings=settings)
        yield store
        store.close()

    def test_upsert_keeps_latest_value(self, db):
        """Writing a key twice leaves one row with the latest value."""
        db.set_value("a", "1")
        db.set_value("a", "2")

        assert db.get_value("a") == "2"
        assert db.select_all_settings() == [Setting("a", "2")]

    def test_change_log_records_each_write(self, db):
        """One entry per write, with insert/update/delete tags."""
        db.set_value("a", "1")
        db.set_value("a", "2")
        db.set_value("b", "1")
        db.delete_setting("a")

        changes = db.read_changes()

        assert [(c.key, c.op) for c in changes] == [
            ("a", ChangeOp.INSERT),
            ("a", ChangeOp.UPDATE),
            ("b", ChangeOp.INSERT),
            ("a", ChangeOp.DELETE),
        ]
        ids = [c.id for c in changes]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)
        assert db.max_change_id() == ids[-1]

    def test_change_timestamp_from_engine_clock(self, db):
        """Timestamps are milliseconds since the epoch."""
        before = int(time.time() * 1000) - 60_000
        db.set_value("a", "1")
        after = int(time.time() * 1000) + 60_000

        (change,) = db.read_changes()
        assert before <= change.unix_time_ms <= after

    def test_read_changes_after_id(self, db):
        """read_changes returns only entries past the given id."""
        for i in range(5):
            db.set_value(f"k{i}", str(i))

        first_two = db.read_changes(limit=2)
        rest = db.read_changes(after_id=first_two[-1].id)

        assert [c.key for c in first_two] == ["k0", "k1"]
        assert [c.key for c in rest] == ["k2", "k3", "k4"]

    def test_read_changes_skips_malformed_rows(self, db, db_path):
        """Foreign log rows with an unknown tag are left out of read_changes."""
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        try:
            conn.execute(f"INSERT INTO {CHANGES_TABLE} (Key, Op, UnixTimeMs) VALUES ('x', '', 0)")
        finally:
            conn.close()
        db.set_value("a", "1")

        assert [(c.key, c.op) for c in db.read_changes()] == [("a", ChangeOp.INSERT)]

    def test_set_value_bool_text(self, db):
        """A text value declared as bool is stored by meaning."""
        db.set_value("enabled", "false", shape=bool)

        assert db.get_value("enabled") == "False"
        assert db.get_value("enabled", bool) is False

    def test_prefix_and_suffix(self, db_path, settings):
        """Keys are namespaced unless raw keys are requested."""
        with SimpleDatabase.create(db_path, prefix="app.", suffix=".v1", settings=settings) as db:
            db.set_value("theme", "dark")
            db.set_value("global", "yes", raw_key=True)

            assert db.get_value("theme") == "dark"
            assert db.get_value("app.theme.v1", raw_key=True) == "dark"
            assert {s.key for s in db.select_all_settings()} == {"app.theme.v1", "global"}

    def test_typed_values(self, db):
        """Primitive and structured values round-trip."""
        db.set_value("count", 3)
        db.set_value("ratio", 0.25)
        db.set_value("enabled", True)
        db.set_value("window", WindowState(800, 600))

        assert db.get_value("count", int) == 3
        assert db.get_value("ratio", float) == 0.25
        assert db.get_value("enabled", bool) is True
        assert db.get_value("window", WindowState) == WindowState(800, 600)
        assert db.get_value("count") == "3"

    def test_missing_key_returns_default(self, db):
        """Missing keys return the default without writing it."""
        assert db.get_value("missing", int) == 0
        assert db.get_value("missing", int, default=7) == 7
        assert not db.exists_setting("missing")
        assert db.read_changes() == []

    def test_set_default_stores_default(self, db):
        """set_default writes the default through the normal write path."""
        value = db.get_value("window", WindowState, default=WindowState(10, 20), set_default=True)

        assert value == WindowState(10, 20)
        assert db.get_value("window", WindowState) == WindowState(10, 20)
        assert [c.op for c in db.read_changes()] == [ChangeOp.INSERT]

    def test_decode_error_and_tolerance(self, db):
        """Malformed payloads raise unless errors are tolerated."""
        db.set_value("window", "{not json")

        with pytest.raises(DecodeError):
            db.get_value("window", WindowState)

        assert db.get_value("window", WindowState, tolerate_errors=True) == WindowState()

    def test_get_values_batch(self, db):
        """Batched lookup returns only existing keys."""
        db.set_value("a", 1)
        db.set_value("b", 2)

        assert db.get_values(["a", "b", "c"], int) == {"a": 1, "b": 2}
        assert db.get_values([], int) == {}

    def test_select_settings_by_keys(self, db):
        """Rows are returned for the requested keys."""
        db.set_value("a", "1")
        db.set_value("b", "2")
        db.set_value("c", "3")

        rows = db.select_settings_by_keys(["a", "c", ""])
        assert sorted(rows, key=lambda s: s.key) == [Setting("a", "1"), Setting("c", "3")]

    def test_get_all_values_skips_empty(self, db):
        """Full scan skips empty and NULL values."""
        db.set_value("a", 1)
        db.set_value("b", 2)
        db.set_value("empty", "")
        db.set_value("null", None, shape=int)

        assert sorted(db.get_all_values(int)) == [1, 2]

    def test_delete_setting(self, db):
        """Delete removes the row and logs it once."""
        db.set_value("a", "1")

        assert db.delete_setting("a") == 1
        assert not db.exists_setting("a")
        assert db.delete_setting("a") == 0
        assert [c.op for c in db.read_changes()] == [ChangeOp.INSERT, ChangeOp.DELETE]

    def test_wal_mode_enabled(self, db, db_path):
        """Opening switches the file to WAL journaling."""
        conn = sqlite3.connect(str(db_path))
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        finally:
            conn.close()

    def test_data_persists_across_instances(self, db, db_path, settings):
        """A second store on the same file sees committed data."""
        db.set_value("a", "1")

        with SimpleDatabase.create(db_path, settings=settings) as other:
            assert other.get_value("a") == "1"
            other.set_value("a", "2")

        assert db.get_value("a") == "2"

    def test_observers_notified(self, db):
        """Observers receive the logical key; a failing observer is contained."""
        seen = []

        def failing(key):
            raise RuntimeError("observer bug")

        db.add_observer(failing)
        db.add_observer(seen.append)

        db.set_value("a", "1")
        db.delete_setting("a")
        db.remove_observer(seen.append)
        db.set_value("b", "1")

        assert seen == ["a", "a"]


class TestLifecycle:
    """Tests for open/close and misuse."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def test_not_open_rejects_reads_and_writes(self):
        """A store that was never opened raises StoreNotOpenError."""
        db = SimpleDatabase()

        assert not db.is_open
        with pytest.raises(StoreNotOpenError):
            db.get_value("a")
        with pytest.raises(StoreNotOpenError):
            db.set_value("a", "1")
        with pytest.raises(StoreNotOpenError):
            db.delete_setting("a")

    def test_closed_store_rejects_operations(self, data_dir):
        """After close the store is inert."""
        db = SimpleDatabase.create(Path(data_dir) / "s.db", settings=StoreSettings(write_lock_dir=data_dir))
        db.close()
        db.close()

        assert not db.is_open
        assert db.path is None
        with pytest.raises(StoreNotOpenError):
            db.set_value("a", "1")

    def test_creates_missing_directory(self, data_dir):
        """Parent directories are created on open."""
        path = Path(data_dir) / "nested" / "dir" / "s.db"
        with SimpleDatabase.create(path, settings=StoreSettings(write_lock_dir=data_dir)) as db:
            assert db.is_open
            assert db.path == path.resolve()
        assert path.exists()

    def test_open_failure_leaves_store_closed(self, data_dir):
        """An unusable path raises StoreOpenError and leaves the store closed."""
        blocker = Path(data_dir) / "not_a_dir"
        blocker.write_text("x")

        db = SimpleDatabase(settings=StoreSettings(write_lock_dir=data_dir))
        with pytest.raises(StoreOpenError) as exc_info:
            db.open(blocker / "s.db")

        assert exc_info.value.code == "STORE_OPEN_ERROR"
        assert not db.is_open
        with pytest.raises(StoreNotOpenError):
            db.get_value("a")

    def test_empty_path_rejected(self):
        with pytest.raises(StoreOpenError):
            SimpleDatabase().open("")

    def test_reopen_switches_files(self, data_dir):
        """Opening an open store closes the previous file first."""
        settings = StoreSettings(write_lock_dir=data_dir)
        db = SimpleDatabase.create(Path(data_dir) / "one.db", settings=settings)
        db.set_value("a", "1")

        db.open(Path(data_dir) / "two.db")

        assert db.path.name == "two.db"
        assert not db.exists_setting("a")
        db.close()


class TestContention:
    """Tests for busy/locked handling and concurrent writers."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def db_path(self, data_dir):
        return Path(data_dir) / "settings.db"

    def _blocker(self, db_path):
        """Second connection holding the write lock."""
        conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
        conn.execute("BEGIN EXCLUSIVE")
        return conn

    def test_exhausted_retries_leave_no_row(self, data_dir, db_path):
        """A write that stays busy fails and leaves nothing behind."""
        settings = StoreSettings(
            write_lock_dir=data_dir,
            write_busy_timeout_ms=0,
            max_retries=2,
            initial_backoff_ms=1,
            max_backoff_ms=2,
        )
        with SimpleDatabase.create(db_path, settings=settings) as db:
            blocker = self._blocker(db_path)
            try:
                with pytest.raises(WriteContentionError) as exc_info:
                    db.set_value("a", "1")
            finally:
                blocker.execute("ROLLBACK")
                blocker.close()

            assert exc_info.value.attempts == 3
            assert not db.exists_setting("a")
            assert db.read_changes() == []

    def test_write_succeeds_after_transient_busy(self, data_dir, db_path):
        """A write retried past a short lock completes with the right state."""
        settings = StoreSettings(write_lock_dir=data_dir, write_busy_timeout_ms=0)
        with SimpleDatabase.create(db_path, settings=settings) as db:
            blocker = self._blocker(db_path)

            def release():
                blocker.execute("COMMIT")
                blocker.close()

            timer = threading.Timer(0.1, release)
            timer.start()
            try:
                db.set_value("a", "1")
            finally:
                timer.join()

            assert db.get_value("a") == "1"
            assert [(c.key, c.op) for c in db.read_changes()] == [("a", ChangeOp.INSERT)]

    def test_reads_not_blocked_by_open_write(self, data_dir, db_path):
        """Readers see the last committed value while a write is in flight."""
        with SimpleDatabase.create(db_path, settings=StoreSettings(write_lock_dir=data_dir)) as db:
            db.set_value("a", "1")

            writer = sqlite3.connect(str(db_path), isolation_level=None)
            try:
                writer.execute("BEGIN IMMEDIATE")
                writer.execute("UPDATE SimpleSetting SET Value = '2' WHERE Key = 'a'")

                assert db.get_value("a") == "1"

                writer.execute("COMMIT")
            finally:
                writer.close()

            assert db.get_value("a") == "2"

    def test_triggers_capture_foreign_writes(self, data_dir, db_path):
        """Writes that bypass the store are still logged."""
        with SimpleDatabase.create(db_path, settings=StoreSettings(write_lock_dir=data_dir)) as db:
            conn = sqlite3.connect(str(db_path), isolation_level=None)
            try:
                conn.execute("INSERT INTO SimpleSetting (Key, Value) VALUES ('x', '1')")
                conn.execute("DELETE FROM SimpleSetting WHERE Key = 'x'")
                count = conn.execute(f"SELECT COUNT(*) FROM {CHANGES_TABLE}").fetchone()[0]
            finally:
                conn.close()

            assert count == 2
            assert [c.op for c in db.read_changes()] == [ChangeOp.INSERT, ChangeOp.DELETE]

    def test_concurrent_writers_never_interleave(self, data_dir, db_path):
        """Two stores on one file: every write logged once, in each writer's program order."""
        settings = StoreSettings(write_lock_dir=data_dir)
        db_a = SimpleDatabase.create(db_path, settings=settings)
        db_b = SimpleDatabase.create(db_path, settings=settings)
        errors = []
        count = 30

        def write(db, name):
            try:
                for i in range(count):
                    db.set_value(f"{name}:{i}", str(i))
            except Exception as e:
                errors.append(e)

        def read():
            try:
                for _ in range(count):
                    db_a.get_value("alpha:0")
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=write, args=(db_a, "alpha")),
            threading.Thread(target=write, args=(db_b, "beta")),
            threading.Thread(target=read),
        ]
        try:
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

            assert errors == []

            changes = db_a.read_changes()
            assert len(changes) == 2 * count
            ids = [c.id for c in changes]
            assert ids == sorted(ids)
            assert all(c.op is ChangeOp.INSERT for c in changes)
            for name in ("alpha", "beta"):
                keys = [c.key for c in changes if c.key.startswith(f"{name}:")]
                assert keys == [f"{name}:{i}" for i in range(count)]
        finally:
            db_a.close()
            db_b.close()

    def test_threads_share_one_store(self, data_dir, db_path):
        """Many threads writing through one instance keep one row per key."""
        with SimpleDatabase.create(db_path, settings=StoreSettings(write_lock_dir=data_dir)) as db:
            threads = [
                threading.Thread(target=lambda n=n: [db.set_value("shared", n) for _ in range(10)])
                for n in range(4)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

            assert len(db.select_all_settings()) == 1
            changes = db.read_changes()
            assert len(changes) == 40
            assert changes[0].op is ChangeOp.INSERT
            assert all(c.op is ChangeOp.UPDATE for c in changes[1:])
