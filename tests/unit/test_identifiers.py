"""Unit tests for domain value objects - identifiers."""

from __future__ import annotations

import pytest

from reldb.domain.value_objects import (
    INITIAL_TIMESTAMP,
    INVALID_TABLE_ID,
    INVALID_TXN_ID,
    RowId,
    RowLocator,
    TableId,
    Timestamp,
    TransactionId,
)

pytestmark = pytest.mark.unit


class TestSentinels:
    """Tests for the reserved identifier values."""

    def test_sentinels_are_zero(self) -> None:
        """Real ids start at 1; zero marks 'none'."""
        assert INVALID_TABLE_ID == TableId(0)
        assert INVALID_TXN_ID == TransactionId(0)
        assert INITIAL_TIMESTAMP == Timestamp(0)

    def test_ids_are_ints(self) -> None:
        """At runtime the NewTypes are plain ints and order as such."""
        assert isinstance(RowId(3), int)
        assert Timestamp(1) < Timestamp(2)


class TestRowLocator:
    """Tests for RowLocator."""

    def test_creation(self) -> None:
        """A locator pairs a table with a row."""
        loc = RowLocator(TableId(3), RowId(42))
        assert loc.table_id == 3
        assert loc.row_id == 42

    def test_equality_and_hashing(self) -> None:
        """Equal locators are interchangeable lock resources."""
        a = RowLocator(TableId(1), RowId(7))
        b = RowLocator(TableId(1), RowId(7))
        c = RowLocator(TableId(2), RowId(7))

        assert a == b
        assert a != c
        assert {a: "held"}[b] == "held"
        assert len({a, b, c}) == 2

    def test_immutable(self) -> None:
        """Locators cannot be changed after creation."""
        loc = RowLocator(TableId(1), RowId(1))
        with pytest.raises(AttributeError):
            loc.row_id = RowId(2)  # type: ignore[misc]

    def test_negative_row_rejected(self) -> None:
        """Row ids are never negative."""
        with pytest.raises(ValueError):
            RowLocator(TableId(1), RowId(-1))

    def test_string_forms(self) -> None:
        """str() is the pair; repr() names the kind."""
        loc = RowLocator(TableId(3), RowId(42))
        assert str(loc) == "(3, 42)"
        assert repr(loc) == "ROW(3:42)"
