"""Unit tests for transaction-related value objects."""

from __future__ import annotations

import pytest

from reldb.domain.value_objects import (
    IsolationLevel,
    LockMode,
    RowId,
    RowLocator,
    TableId,
    TransactionState,
)

pytestmark = pytest.mark.unit


class TestTransactionState:
    """Tests for TransactionState enum."""

    def test_active_is_not_terminal(self) -> None:
        """ACTIVE can still run statements."""
        assert TransactionState.ACTIVE.is_active()
        assert not TransactionState.ACTIVE.is_terminal()

    @pytest.mark.parametrize("state", [TransactionState.COMMITTED, TransactionState.ABORTED])
    def test_finished_states_are_terminal(self, state: TransactionState) -> None:
        """COMMITTED and ABORTED are terminal."""
        assert state.is_terminal()
        assert not state.is_active()


class TestIsolationLevel:
    """Tests for IsolationLevel enum."""

    def test_sql_name(self) -> None:
        """Levels render as written in SQL."""
        assert IsolationLevel.REPEATABLE_READ.sql_name == "REPEATABLE READ"

    @pytest.mark.parametrize(
        "text,level",
        [
            ("read committed", IsolationLevel.READ_COMMITTED),
            ("REPEATABLE   READ", IsolationLevel.REPEATABLE_READ),
            ("serializable", IsolationLevel.SERIALIZABLE),
        ],
    )
    def test_from_sql(self, text: str, level: IsolationLevel) -> None:
        """Names parse regardless of case and spacing."""
        assert IsolationLevel.from_sql(text) == level

    def test_from_sql_unknown(self) -> None:
        """Unknown names are rejected."""
        with pytest.raises(ValueError):
            IsolationLevel.from_sql("snapshot")

    def test_pinned_snapshot_levels(self) -> None:
        """Only REPEATABLE READ and SERIALIZABLE pin their snapshot."""
        assert IsolationLevel.REPEATABLE_READ.pins_snapshot
        assert IsolationLevel.SERIALIZABLE.pins_snapshot
        assert not IsolationLevel.READ_COMMITTED.pins_snapshot
        assert not IsolationLevel.READ_UNCOMMITTED.pins_snapshot


class TestLockMode:
    """Tests for the lock compatibility matrix."""

    def test_writers_coexist_on_tables(self) -> None:
        """Two IX table locks are compatible."""
        assert LockMode.INTENT_EXCLUSIVE.is_compatible(LockMode.INTENT_EXCLUSIVE)

    def test_exclusive_conflicts_with_everything(self) -> None:
        """X is compatible with no mode."""
        for mode in LockMode:
            assert not LockMode.EXCLUSIVE.is_compatible(mode)
            assert not mode.is_compatible(LockMode.EXCLUSIVE)

    def test_shared_blocks_intent_exclusive(self) -> None:
        """S and IX conflict."""
        assert not LockMode.SHARED.is_compatible(LockMode.INTENT_EXCLUSIVE)

    def test_covers(self) -> None:
        """A held X makes any further request redundant; IX covers IS."""
        assert LockMode.EXCLUSIVE.covers(LockMode.INTENT_EXCLUSIVE)
        assert LockMode.INTENT_EXCLUSIVE.covers(LockMode.INTENT_SHARED)
        assert not LockMode.INTENT_EXCLUSIVE.covers(LockMode.EXCLUSIVE)


class TestRowLocator:
    """Tests for RowLocator."""

    def test_equality_and_hash(self) -> None:
        """Locators are value objects usable as lock resources."""
        a = RowLocator(TableId(1), RowId(7))
        b = RowLocator(TableId(1), RowId(7))
        assert a == b
        assert len({a, b}) == 1

    def test_rejects_negative_row_id(self) -> None:
        """Row ids are non-negative."""
        with pytest.raises(ValueError):
            RowLocator(TableId(1), RowId(-1))

    def test_str(self) -> None:
        """str() shows the (table, row) pair."""
        assert str(RowLocator(TableId(3), RowId(42))) == "(3, 42)"
