"""Unit tests for the trigger registry."""

from __future__ import annotations

import pytest

from reldb.domain.errors import TriggerFailed, UniqueViolation
from reldb.domain.services import (
    TriggerContext,
    TriggerEvent,
    TriggerRegistry,
    TriggerTiming,
)
from reldb.domain.value_objects import TransactionId

pytestmark = pytest.mark.unit


def context(timing: TriggerTiming, new: dict | None = None, old: dict | None = None) -> TriggerContext:
    return TriggerContext(
        table="orders",
        event=TriggerEvent.INSERT,
        timing=timing,
        txn_id=TransactionId(1),
        old=old,
        new=new,
    )


@pytest.fixture
def registry() -> TriggerRegistry:
    return TriggerRegistry()


class TestRegistration:
    """Tests for registering and dropping triggers."""

    def test_sql_names_accepted(self, registry: TriggerRegistry) -> None:
        """Event and timing may be given as strings."""
        trigger = registry.register("orders", "insert", "before", lambda ctx: None)

        assert trigger.event == TriggerEvent.INSERT
        assert trigger.timing == TriggerTiming.BEFORE
        assert trigger.name.startswith("orders_before_insert_")
        assert registry.has_triggers("orders", TriggerEvent.INSERT)
        assert not registry.has_triggers("orders", TriggerEvent.DELETE)

    def test_unknown_event(self, registry: TriggerRegistry) -> None:
        """Unknown event names are rejected."""
        with pytest.raises(ValueError):
            registry.register("orders", "truncate", "after", lambda ctx: None)

    def test_unregister(self, registry: TriggerRegistry) -> None:
        """Triggers can be removed by name."""
        registry.register("orders", TriggerEvent.INSERT, TriggerTiming.AFTER, lambda ctx: None, name="audit")

        assert registry.unregister("audit") is True
        assert registry.unregister("audit") is False
        assert registry.list_triggers() == []

    def test_drop_table(self, registry: TriggerRegistry) -> None:
        """Dropping a table forgets its triggers only."""
        registry.register("orders", "INSERT", "AFTER", lambda ctx: None)
        registry.register("items", "INSERT", "AFTER", lambda ctx: None)

        registry.drop_table("orders")
        assert [t.table for t in registry.list_triggers()] == ["items"]


class TestFiring:
    """Tests for running callbacks."""

    def test_before_triggers_chain_replacements(self, registry: TriggerRegistry) -> None:
        """Each BEFORE callback sees the previous replacement."""
        registry.register("orders", "INSERT", "BEFORE", lambda ctx: {**ctx.new, "qty": ctx.new["qty"] * 2})
        registry.register("orders", "INSERT", "BEFORE", lambda ctx: {**ctx.new, "qty": ctx.new["qty"] + 1})
        registry.register("orders", "INSERT", "BEFORE", lambda ctx: None)

        result = registry.fire(context(TriggerTiming.BEFORE, new={"qty": 5}))
        assert result == {"qty": 11}
        assert registry.fired_total == 3

    def test_after_return_value_ignored(self, registry: TriggerRegistry) -> None:
        """AFTER callbacks cannot change the row."""
        seen: list[dict] = []

        def audit(ctx: TriggerContext) -> dict:
            seen.append(ctx.new)
            return {"qty": 0}

        registry.register("orders", "INSERT", "AFTER", audit)
        assert registry.fire(context(TriggerTiming.AFTER, new={"qty": 5})) == {"qty": 5}
        assert seen == [{"qty": 5}]

    def test_no_triggers(self, registry: TriggerRegistry) -> None:
        """Firing without callbacks returns the new values unchanged."""
        assert registry.fire(context(TriggerTiming.BEFORE, new={"qty": 1})) == {"qty": 1}
        assert registry.fired_total == 0

    def test_failure_wrapped(self, registry: TriggerRegistry) -> None:
        """Callback exceptions become TriggerFailed."""

        def reject(ctx: TriggerContext) -> None:
            raise ValueError("no orders on sunday")

        registry.register("orders", "INSERT", "BEFORE", reject, name="guard")
        with pytest.raises(TriggerFailed) as exc_info:
            registry.fire(context(TriggerTiming.BEFORE, new={"qty": 1}))

        assert "guard" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_database_error_details_kept(self, registry: TriggerRegistry) -> None:
        """Engine errors raised by a callback are summarized in the details."""

        def clash(ctx: TriggerContext) -> None:
            raise UniqueViolation("duplicate", constraint="orders_pkey", table="orders")

        registry.register("orders", "INSERT", "AFTER", clash)
        with pytest.raises(TriggerFailed) as exc_info:
            registry.fire(context(TriggerTiming.AFTER, new={"id": 1}))

        assert exc_info.value.details["cause"]["constraint"] == "orders_pkey"
