"""Redo recovery from the logical commit log.

Only committed transactions reach the commit log, so recovery is a single
redo pass with no undo phase:

    1. Catalog: a record that changed the catalog carries the full catalog
       state; heaps are created for new tables and dropped for removed ones.
    2. Rows: INSERT appends a committed version, DELETE closes the row's
       open version. Operations on tables that no longer exist are skipped.
    3. Indexes are rebuilt from the recovered heaps.
    4. Counters (row ids, sequences, table ids, transaction ids, commit
       timestamp) continue after the highest recovered values.

Recovery must run single-threaded before the engine accepts statements.

References:
    - Gray & Reuter, "Transaction Processing" (1993), ch. 9
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from reldb.domain.entities import CatalogState, ExpressionParser, RowVersion
from reldb.domain.services.catalog import Catalog
from reldb.domain.services.storage_engine import StorageEngine
from reldb.domain.services.transaction_manager import MVCCTransactionManager
from reldb.domain.value_objects import INITIAL_TIMESTAMP, RowId, TableId, Timestamp
from reldb.infrastructure.logging import get_logger
from reldb.infrastructure.tracing import trace_function
from reldb.ports.outbound.commit_log import CommitLog, CommitRecord, OperationKind


logger = get_logger(__name__, component="recovery")


class RecoveryError(Exception):
    """The commit log could not be replayed."""


@dataclass
class RecoveryStats:
    """Statistics about a completed recovery."""

    records_replayed: int = 0
    operations_applied: int = 0
    operations_skipped: int = 0
    tables_recovered: int = 0
    last_commit_ts: Timestamp = INITIAL_TIMESTAMP
    duration_ms: float = 0.0


class RecoveryService:
    """Rebuilds catalog and storage state by replaying the commit log.

    Usage:
        recovery = RecoveryService(commit_log, catalog, storage, txn_manager, parse)
        stats = recovery.recover()
    """

    def __init__(
        self,
        commit_log: CommitLog,
        catalog: Catalog,
        storage: StorageEngine,
        txn_manager: MVCCTransactionManager,
        parse_expression: ExpressionParser,
    ) -> None:
        """Initialize the recovery service.

        Args:
            commit_log: Log to replay.
            catalog: Catalog to restore (expected empty).
            storage: Storage engine to fill (expected empty).
            txn_manager: Receives the recovered timestamp and txn id counters.
            parse_expression: Re-parses stored default and CHECK expressions.
        """
        self._commit_log = commit_log
        self._catalog = catalog
        self._storage = storage
        self._txn_manager = txn_manager
        self._parse = parse_expression

    @trace_function("reldb.recovery")
    def recover(self) -> RecoveryStats:
        """Replay every durable commit record.

        Raises:
            RecoveryError: If a record references state that cannot exist.
        """
        start = time.monotonic()
        stats = RecoveryStats()
        state = self._catalog.current()
        max_txn_id = 0

        for record in self._commit_log.read_all():
            if record.catalog is not None:
                state = self._apply_catalog(state, record)
            self._apply_operations(state, record, stats)
            stats.records_replayed += 1
            stats.last_commit_ts = max(stats.last_commit_ts, record.commit_ts)
            max_txn_id = max(max_txn_id, record.txn_id)

        if stats.records_replayed:
            self._catalog.restore(state)
            self._storage.restore_indexes(state)
            self._txn_manager.restore(stats.last_commit_ts, max_txn_id + 1)

        stats.tables_recovered = len(state.tables)
        stats.duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "recovery_complete",
            records=stats.records_replayed,
            operations=stats.operations_applied,
            skipped=stats.operations_skipped,
            tables=stats.tables_recovered,
            last_commit_ts=stats.last_commit_ts,
            duration_ms=round(stats.duration_ms, 2),
        )
        return stats

    def _apply_catalog(self, previous: CatalogState, record: CommitRecord) -> CatalogState:
        try:
            state = CatalogState.from_dict(record.catalog or {}, self._parse)
        except (KeyError, ValueError) as exc:
            raise RecoveryError(
                f"commit record of txn {record.txn_id} has an unreadable catalog: {exc}"
            ) from exc

        kept = {schema.table_id for schema in state.tables.values()}
        for schema in previous.tables.values():
            if schema.table_id not in kept:
                self._storage.drop_heap(schema.table_id)
        for table_id in sorted(kept):
            self._storage.create_heap(TableId(table_id))
        return state

    def _apply_operations(
        self, state: CatalogState, record: CommitRecord, stats: RecoveryStats
    ) -> None:
        for op in record.operations:
            if state.table_by_id(op.table_id) is None:
                stats.operations_skipped += 1
                continue

            if op.kind == OperationKind.INSERT:
                self._storage.restore_row(
                    op.table_id,
                    RowVersion(
                        row_id=RowId(op.row_id),
                        values=dict(op.values or {}),
                        created_by=record.txn_id,
                        created_ts=record.commit_ts,
                    ),
                )
            else:
                heap = self._storage.heap(op.table_id)
                versions = heap.versions(RowId(op.row_id)) if heap is not None else []
                open_version = next((v for v in reversed(versions) if not v.is_deleted()), None)
                if open_version is None:
                    raise RecoveryError(
                        f"txn {record.txn_id} deletes row {op.row_id} of table "
                        f"{op.table_id}, which has no open version"
                    )
                open_version.deleted_by = record.txn_id
                open_version.deleted_ts = record.commit_ts
            stats.operations_applied += 1
