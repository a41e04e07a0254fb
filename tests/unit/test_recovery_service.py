"""Unit tests for RecoveryService (redo from the commit log)."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from reldb.adapters.inbound.sql_parser import SQLParser
from reldb.adapters.outbound import FileCommitLog, InMemoryCommitLog
from reldb.application.evaluator import RowExpressionEvaluator
from reldb.domain.entities import CheckConstraint, Column, TableSchema, UniqueConstraint
from reldb.domain.errors import CheckViolation, UniqueViolation
from reldb.domain.services import (
    BTreeIndexManager,
    Catalog,
    LockManager,
    MVCCTransactionManager,
    RecoveryError,
    RecoveryService,
    StorageEngine,
)
from reldb.domain.value_objects import INTEGER, TEXT, RowId, TableId, Timestamp, TransactionId
from reldb.ports.outbound.commit_log import (
    CommitLog,
    CommitRecord,
    OperationKind,
    RowOperation,
    SyncMode,
)

pytestmark = pytest.mark.unit

parser = SQLParser()


@dataclass
class Instance:
    """One engine's worth of components over a commit log."""

    commit_log: CommitLog
    catalog: Catalog
    storage: StorageEngine
    tm: MVCCTransactionManager

    @classmethod
    def open(cls, commit_log: CommitLog) -> Instance:
        catalog = Catalog()
        locks = LockManager(timeout_ms=200)
        storage = StorageEngine(BTreeIndexManager(max_keys=4), locks, RowExpressionEvaluator())
        tm = MVCCTransactionManager(catalog, storage, locks, commit_log)
        return cls(commit_log, catalog, storage, tm)

    def recover(self):
        return RecoveryService(
            self.commit_log, self.catalog, self.storage, self.tm, parser.parse_expression
        ).recover()

    def rows(self, name: str) -> list[dict]:
        txn = self.tm.begin()
        snapshot = self.tm.begin_statement(txn)
        schema = self.catalog.get_table(txn, name)
        rows = [v.values for v in self.storage.scan(txn, schema, snapshot)]
        self.tm.commit(txn)
        return rows


def create_products(instance: Instance) -> None:
    txn = instance.tm.begin()
    instance.tm.begin_statement(txn)
    result = instance.catalog.define_table(
        txn,
        TableSchema(
            "products",
            (
                Column("id", INTEGER, auto_increment=True),
                Column("name", TEXT),
                Column("qty", INTEGER),
            ),
            primary_key=UniqueConstraint("", ("id",), primary=True),
            checks=(
                CheckConstraint(
                    "", "qty >= 0", parser.parse_expression("qty >= 0"), frozenset({"qty"})
                ),
            ),
        ),
    )
    instance.storage.create_table(txn, result.schema)
    for index in result.added_indexes:
        instance.storage.build_index(txn, index, result.schema)
    instance.tm.commit(txn)


def write(instance: Instance, action) -> None:
    txn = instance.tm.begin()
    instance.tm.begin_statement(txn)
    action(txn, instance.catalog.get_table(txn, "products"))
    instance.tm.commit(txn)


@pytest.fixture
def log_path(temp_dir: Path) -> Path:
    return temp_dir / "commit.log"


class TestRecoveryService:
    """Tests for replaying committed work."""

    def test_empty_log(self) -> None:
        """Recovering nothing leaves an empty catalog."""
        instance = Instance.open(InMemoryCommitLog())
        stats = instance.recover()

        assert stats.records_replayed == 0
        assert instance.catalog.current().tables == {}

    def test_replays_committed_rows(self, log_path: Path) -> None:
        """Inserts, updates and deletes are redone in commit order."""
        first = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        create_products(first)
        write(first, lambda t, s: [
            first.storage.insert(t, s, {"name": name, "qty": qty})
            for name, qty in (("bolt", 10), ("nut", 5), ("gear", 1))
        ])

        def change(txn, schema) -> None:
            rows = {v.values["name"]: v for v in first.storage.scan(txn, schema, txn.snapshot)}
            first.storage.update(txn, schema, first.storage.lock_row(txn, schema, rows["bolt"]), {"qty": 7})
            first.storage.delete(txn, schema, first.storage.lock_row(txn, schema, rows["gear"]))

        write(first, change)
        expected = first.rows("products")
        first.commit_log.close()

        second = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        stats = second.recover()

        assert stats.records_replayed == 3
        assert stats.tables_recovered == 1
        assert second.rows("products") == expected
        assert {r["name"]: r["qty"] for r in expected} == {"bolt": 7, "nut": 5}

    def test_counters_continue(self, log_path: Path) -> None:
        """Sequences, transaction ids and timestamps resume after recovery."""
        first = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        create_products(first)
        write(first, lambda t, s: first.storage.insert(t, s, {"name": "a", "qty": 1}))
        last_ts = first.tm.last_commit_ts
        last_txn = first.tm.begin().txn_id
        first.commit_log.close()

        second = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        second.recover()

        assert second.tm.last_commit_ts == last_ts
        assert second.tm.begin().txn_id >= last_txn
        inserted = []
        write(second, lambda t, s: inserted.append(second.storage.insert(t, s, {"name": "b"})))
        assert inserted[0].values["id"] == 2
        assert inserted[0].row_id > 1

    def test_constraints_rebuilt(self, log_path: Path) -> None:
        """Recovered CHECK expressions and key indexes are enforced."""
        first = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        create_products(first)
        write(first, lambda t, s: first.storage.insert(t, s, {"id": 1, "name": "a", "qty": 1}))
        first.commit_log.close()

        second = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        second.recover()
        assert second.storage.get_index("products_pkey") is not None

        with pytest.raises(UniqueViolation):
            write(second, lambda t, s: second.storage.insert(t, s, {"id": 1, "name": "b"}))
        with pytest.raises(CheckViolation):
            write(second, lambda t, s: second.storage.insert(t, s, {"name": "c", "qty": -1}))

    def test_dropped_table_operations_skipped(self) -> None:
        """Rows of tables missing from the catalog are skipped."""
        log = InMemoryCommitLog()
        log.append(
            CommitRecord(
                TransactionId(1),
                Timestamp(1),
                [RowOperation(OperationKind.INSERT, TableId(42), RowId(1), {"x": 1})],
            )
        )
        stats = Instance.open(log).recover()
        assert stats.operations_skipped == 1
        assert stats.operations_applied == 0

    def test_delete_without_open_version(self, log_path: Path) -> None:
        """A delete of a row that was never inserted is a corrupt log."""
        first = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        create_products(first)
        table_id = first.catalog.current().table("products").table_id
        first.commit_log.append(
            CommitRecord(
                TransactionId(50),
                Timestamp(50),
                [RowOperation(OperationKind.DELETE, table_id, RowId(1234))],
            )
        )
        first.commit_log.close()

        second = Instance.open(FileCommitLog(log_path, SyncMode.FLUSH))
        with pytest.raises(RecoveryError):
            second.recover()
