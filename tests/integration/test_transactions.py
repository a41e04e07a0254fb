"""Integration tests for isolation levels and concurrent writers."""

from __future__ import annotations

import threading
import time
from typing import Callable, Generator

import pytest
from prometheus_client import CollectorRegistry

from reldb.application import DatabaseEngine
from reldb.domain.errors import (
    ColumnExists,
    DeadlockDetected,
    LockTimeout,
    SerializationFailure,
    TableNotFound,
    TransactionAborted,
    UniqueViolation,
)
from reldb.infrastructure.config import Config, TransactionConfig
from reldb.infrastructure.container import build_container

pytestmark = pytest.mark.integration


@pytest.fixture
def accounts(engine: DatabaseEngine) -> DatabaseEngine:
    """Two accounts holding 100 each."""
    engine.execute("CREATE TABLE accounts (id INTEGER PRIMARY KEY, balance INTEGER NOT NULL)")
    engine.execute("INSERT INTO accounts VALUES (1, 100), (2, 100)")
    return engine


def balance(db: DatabaseEngine, account: int, session_id: int | None = None) -> int:
    return db.execute(
        "SELECT balance FROM accounts WHERE id = ?", [account], session_id=session_id
    ).scalar()


def wait_for_waiters(db: DatabaseEngine, count: int = 1, timeout: float = 5.0) -> None:
    """Block until ``count`` transactions are queued on a lock."""
    deadline = time.monotonic() + timeout
    while db.get_stats()["locks"]["waiting_transactions"] < count:
        if time.monotonic() > deadline:
            raise AssertionError("no transaction started waiting for a lock")
        time.sleep(0.01)


class TestSnapshots:
    """Tests for what each isolation level reads."""

    def test_uncommitted_changes_are_invisible(self, accounts: DatabaseEngine) -> None:
        """Other sessions never read uncommitted rows."""
        writer = accounts.create_session()
        accounts.begin(writer)
        accounts.execute("UPDATE accounts SET balance = 0 WHERE id = 1", session_id=writer)

        assert balance(accounts, 1) == 100
        assert balance(accounts, 1, writer) == 0
        accounts.rollback(writer)

    def test_read_committed_sees_new_commits(self, accounts: DatabaseEngine) -> None:
        """Each statement takes a fresh snapshot."""
        reader = accounts.create_session("READ COMMITTED")
        accounts.begin(reader)
        assert balance(accounts, 1, reader) == 100

        accounts.execute("UPDATE accounts SET balance = 50 WHERE id = 1")
        assert balance(accounts, 1, reader) == 50
        accounts.commit(reader)

    def test_repeatable_read_keeps_snapshot(self, accounts: DatabaseEngine) -> None:
        """The first statement's snapshot holds for the whole transaction."""
        reader = accounts.create_session("REPEATABLE READ")
        accounts.begin(reader)
        assert balance(accounts, 1, reader) == 100

        accounts.execute("UPDATE accounts SET balance = 50 WHERE id = 1")
        accounts.execute("INSERT INTO accounts VALUES (3, 7)")

        assert balance(accounts, 1, reader) == 100
        assert accounts.execute("SELECT COUNT(*) FROM accounts", session_id=reader).scalar() == 2
        accounts.commit(reader)
        assert balance(accounts, 1, reader) == 50

    def test_own_writes_visible(self, accounts: DatabaseEngine) -> None:
        """A transaction reads what it wrote, even under a fixed snapshot."""
        session = accounts.create_session("REPEATABLE READ")
        accounts.begin(session)
        accounts.execute("INSERT INTO accounts VALUES (3, 1)", session_id=session)
        accounts.execute("UPDATE accounts SET balance = balance + 1", session_id=session)

        assert accounts.execute(
            "SELECT SUM(balance) FROM accounts", session_id=session
        ).scalar() == 204
        accounts.rollback(session)

    def test_uncommitted_ddl_is_private(self, engine: DatabaseEngine) -> None:
        """A table created in an open transaction exists only there."""
        session = engine.create_session()
        engine.begin(session)
        engine.execute("CREATE TABLE scratch (k INTEGER)", session_id=session)
        engine.execute("INSERT INTO scratch VALUES (1)", session_id=session)

        with pytest.raises(TableNotFound):
            engine.execute("SELECT * FROM scratch")
        engine.commit(session)
        assert engine.execute("SELECT k FROM scratch").scalar() == 1


class TestSerializable:
    """Tests for SERIALIZABLE validation."""

    def test_write_skew_rejected(self, engine: DatabaseEngine) -> None:
        """Two transactions acting on each other's stale reads cannot both commit."""
        engine.execute("CREATE TABLE doctors (name TEXT PRIMARY KEY, on_call BOOLEAN)")
        engine.execute("INSERT INTO doctors VALUES ('alice', TRUE), ('bob', TRUE)")
        first = engine.create_session("SERIALIZABLE")
        second = engine.create_session("SERIALIZABLE")
        engine.begin(first)
        engine.begin(second)

        for session, name in ((first, "alice"), (second, "bob")):
            on_call = engine.execute(
                "SELECT COUNT(*) FROM doctors WHERE on_call", session_id=session
            ).scalar()
            assert on_call == 2
            engine.execute(
                "UPDATE doctors SET on_call = FALSE WHERE name = ?", [name], session_id=session
            )

        engine.commit(first)
        with pytest.raises(SerializationFailure):
            engine.commit(second)
        assert engine.execute("SELECT COUNT(*) FROM doctors WHERE on_call").scalar() == 1

    def test_read_only_transactions_commit(self, accounts: DatabaseEngine) -> None:
        """Readers that wrote nothing never fail validation."""
        session = accounts.create_session("SERIALIZABLE")
        accounts.begin(session)
        balance(accounts, 1, session)
        accounts.execute("UPDATE accounts SET balance = 0 WHERE id = 1")
        accounts.commit(session)

    def test_repeatable_read_write_conflict(self, accounts: DatabaseEngine) -> None:
        """Updating a row changed since the snapshot is a serialization failure."""
        session = accounts.create_session("REPEATABLE READ")
        accounts.begin(session)
        balance(accounts, 1, session)
        accounts.execute("UPDATE accounts SET balance = balance - 10 WHERE id = 1")

        with pytest.raises(SerializationFailure):
            accounts.execute(
                "UPDATE accounts SET balance = balance - 10 WHERE id = 1", session_id=session
            )
        accounts.rollback(session)
        assert balance(accounts, 1) == 90


class TestRowLocks:
    """Tests for blocking between concurrent writers."""

    def test_writer_waits_then_sees_commit(self, accounts: DatabaseEngine) -> None:
        """Under READ COMMITTED a blocked update applies on top of the winner."""
        holder = accounts.create_session()
        accounts.begin(holder)
        accounts.execute("UPDATE accounts SET balance = balance + 1 WHERE id = 1", session_id=holder)

        errors: list[Exception] = []

        def add_ten() -> None:
            try:
                accounts.execute("UPDATE accounts SET balance = balance + 10 WHERE id = 1")
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=add_ten)
        worker.start()
        wait_for_waiters(accounts)
        assert worker.is_alive()

        accounts.commit(holder)
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert errors == []
        assert balance(accounts, 1) == 111

    def test_waiter_skips_row_no_longer_matching(self, accounts: DatabaseEngine) -> None:
        """A blocked update re-checks its WHERE clause on the new version."""
        holder = accounts.create_session()
        accounts.begin(holder)
        accounts.execute("UPDATE accounts SET balance = 0 WHERE id = 1", session_id=holder)

        results: list[int] = []
        worker = threading.Thread(
            target=lambda: results.append(
                accounts.execute("UPDATE accounts SET balance = -1 WHERE balance = 100").affected_rows
            )
        )
        worker.start()
        wait_for_waiters(accounts)
        accounts.commit(holder)
        worker.join(timeout=5)

        assert results == [1]
        assert accounts.execute("SELECT id, balance FROM accounts ORDER BY id").tuples() == [
            (1, 0),
            (2, -1),
        ]

    def test_deadlock_victim(self, accounts: DatabaseEngine) -> None:
        """The transaction closing a wait cycle is aborted; the other proceeds."""
        first = accounts.create_session()
        second = accounts.create_session()
        accounts.begin(first)
        accounts.begin(second)
        accounts.execute("UPDATE accounts SET balance = 1 WHERE id = 1", session_id=first)
        accounts.execute("UPDATE accounts SET balance = 2 WHERE id = 2", session_id=second)

        errors: list[Exception] = []

        def cross_update() -> None:
            try:
                accounts.execute("UPDATE accounts SET balance = 1 WHERE id = 2", session_id=first)
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=cross_update)
        worker.start()
        wait_for_waiters(accounts)

        with pytest.raises(DeadlockDetected):
            accounts.execute("UPDATE accounts SET balance = 2 WHERE id = 1", session_id=second)
        with pytest.raises(TransactionAborted):
            accounts.execute("SELECT 1", session_id=second)
        accounts.rollback(second)

        worker.join(timeout=5)
        assert errors == []
        accounts.commit(first)
        assert accounts.execute("SELECT balance FROM accounts ORDER BY id").tuples() == [(1,), (1,)]
        assert accounts.get_stats()["locks"]["deadlocks_total"] == 1

    def test_concurrent_inserts(self, engine: DatabaseEngine) -> None:
        """Parallel sessions insert without losing rows or reusing ids."""
        engine.execute("CREATE TABLE events (id SERIAL PRIMARY KEY, source INTEGER)")
        errors: list[Exception] = []

        def insert_batch(source: int) -> None:
            session = engine.create_session()
            try:
                for _ in range(25):
                    engine.execute("INSERT INTO events (source) VALUES (?)", [source], session_id=session)
            except Exception as e:
                errors.append(e)
            finally:
                engine.close_session(session)

        workers = [threading.Thread(target=insert_batch, args=(n,)) for n in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=10)

        assert errors == []
        assert engine.execute("SELECT COUNT(*), COUNT(DISTINCT id), MAX(id) FROM events").tuples() == [
            (100, 100, 100)
        ]


class TestLockTimeout:
    """Tests for bounded lock waits."""

    @pytest.fixture
    def impatient(
        self, test_config: Config, collector_registry: CollectorRegistry
    ) -> Generator[DatabaseEngine, None, None]:
        config = test_config.model_copy(
            update={"transaction": TransactionConfig(lock_timeout_ms=100)}
        )
        db = build_container(config, registry=collector_registry).resolve(DatabaseEngine)
        db.start()
        db.execute("CREATE TABLE accounts (id INTEGER PRIMARY KEY, balance INTEGER NOT NULL)")
        db.execute("INSERT INTO accounts VALUES (1, 100)")
        yield db
        db.stop()

    def test_wait_times_out(
        self, impatient: DatabaseEngine, metric_value: Callable[..., float]
    ) -> None:
        """A lock not granted in time fails the statement only."""
        holder = impatient.create_session()
        impatient.begin(holder)
        impatient.execute("UPDATE accounts SET balance = 0 WHERE id = 1", session_id=holder)

        waiter = impatient.create_session()
        impatient.begin(waiter)
        impatient.execute("INSERT INTO accounts VALUES (2, 5)", session_id=waiter)
        with pytest.raises(LockTimeout):
            impatient.execute("DELETE FROM accounts WHERE id = 1", session_id=waiter)

        impatient.commit(waiter)
        impatient.commit(holder)
        assert impatient.execute("SELECT id, balance FROM accounts ORDER BY id").tuples() == [
            (1, 0),
            (2, 5),
        ]
        assert metric_value("reldb_lock_timeouts_total") == 1


class TestAbort:
    """Tests for what a rolled back or failed statement leaves behind."""

    def test_rollback_hides_rows_from_dirty_readers(self, engine: DatabaseEngine) -> None:
        """READ UNCOMMITTED never reads rows of an aborted transaction."""
        engine.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        writer = engine.create_session()
        engine.execute("BEGIN", session_id=writer)
        engine.execute("INSERT INTO t VALUES (1)", session_id=writer)

        reader = engine.create_session("READ UNCOMMITTED")
        assert engine.execute("SELECT id FROM t", session_id=reader).tuples() == [(1,)]

        engine.execute("ROLLBACK", session_id=writer)
        assert engine.execute("SELECT id FROM t", session_id=reader).tuples() == []
        assert engine.execute("SELECT count(*) FROM t").scalar() == 0

    def test_rollback_releases_locks(self, engine: DatabaseEngine) -> None:
        """The same key can be inserted again right after ROLLBACK."""
        engine.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        session = engine.create_session()
        engine.execute("BEGIN", session_id=session)
        engine.execute("INSERT INTO t VALUES (1)", session_id=session)
        engine.execute("ROLLBACK", session_id=session)
        assert engine.get_stats()["locks"]["locked_resources"] == 0

        engine.execute("INSERT INTO t VALUES (1)", session_id=session)
        engine.execute("INSERT INTO t VALUES (2)")
        assert engine.execute("SELECT id FROM t ORDER BY id").tuples() == [(1,), (2,)]

    def test_failed_multi_row_insert_is_undone(self, engine: DatabaseEngine) -> None:
        """Rows written before the violating row are rolled back with it."""
        engine.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v INTEGER UNIQUE)")
        engine.execute("INSERT INTO t VALUES (1, 1)")
        reader = engine.create_session("READ UNCOMMITTED")

        with pytest.raises(UniqueViolation):
            engine.execute("INSERT INTO t VALUES (2, 2), (3, 1)")

        assert engine.execute("SELECT id FROM t ORDER BY id", session_id=reader).tuples() == [(1,)]
        assert engine.get_stats()["locks"]["locked_resources"] == 0
        engine.execute("INSERT INTO t VALUES (2, 2)")
        assert engine.execute("SELECT id FROM t ORDER BY id").tuples() == [(1,), (2,)]

    def test_failed_statement_in_transaction_is_undone(self, engine: DatabaseEngine) -> None:
        """Inside a transaction only the failing statement is rolled back."""
        engine.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v INTEGER UNIQUE)")
        engine.execute("INSERT INTO t VALUES (1, 1)")
        writer = engine.create_session()
        reader = engine.create_session("READ UNCOMMITTED")
        engine.execute("BEGIN", session_id=writer)
        engine.execute("INSERT INTO t VALUES (4, 4)", session_id=writer)

        with pytest.raises(UniqueViolation):
            engine.execute("INSERT INTO t VALUES (2, 2), (3, 1)", session_id=writer)

        assert engine.execute("SELECT id FROM t ORDER BY id", session_id=reader).tuples() == [
            (1,),
            (4,),
        ]
        engine.execute("COMMIT", session_id=writer)
        assert engine.execute("SELECT id FROM t ORDER BY id").tuples() == [(1,), (4,)]

    def test_failed_autocommit_ddl_releases_table_lock(self, engine: DatabaseEngine) -> None:
        """A failed ALTER leaves the table free for the next statement."""
        engine.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, note TEXT)")
        with pytest.raises(ColumnExists):
            engine.execute("ALTER TABLE t ADD COLUMN note TEXT")

        assert engine.get_stats()["locks"]["locked_resources"] == 0
        engine.execute("ALTER TABLE t ADD COLUMN extra INTEGER")
        engine.execute("INSERT INTO t VALUES (1, 'x', 2)")
        assert engine.execute("SELECT id, note, extra FROM t").tuples() == [(1, "x", 2)]
