"""Row-level triggers as explicit callbacks.

Triggers are plain Python callables registered for a (table, event,
timing) triple. They run synchronously inside the writing transaction,
once per affected row:

    - BEFORE callbacks see the proposed new values and may return a
      replacement mapping (returning None keeps the values).
    - AFTER callbacks see the final old/new values.

Any exception raised by a callback aborts the whole transaction.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from reldb.domain.errors import DatabaseError, TriggerFailed
from reldb.domain.value_objects import TransactionId
from reldb.infrastructure.logging import get_logger


logger = get_logger(__name__, component="triggers")


class TriggerEvent(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class TriggerTiming(Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"


@dataclass
class TriggerContext:
    """What a trigger callback sees for one row.

    Attributes:
        table: Table being written
        event: INSERT, UPDATE or DELETE
        timing: BEFORE or AFTER
        txn_id: The writing transaction
        old: Row values before the change (None for INSERT)
        new: Row values after the change (None for DELETE)
        execute: Runs a statement in the writing transaction
    """

    table: str
    event: TriggerEvent
    timing: TriggerTiming
    txn_id: TransactionId
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    execute: Callable[..., Any] | None = field(default=None, repr=False)


TriggerCallback = Callable[[TriggerContext], "dict[str, Any] | None"]


@dataclass(frozen=True)
class Trigger:
    name: str
    table: str
    event: TriggerEvent
    timing: TriggerTiming
    callback: TriggerCallback = field(compare=False)


class TriggerRegistry:
    """Registered triggers keyed by (table, event, timing).

    Callbacks for the same key run in registration order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._triggers: dict[tuple[str, TriggerEvent, TriggerTiming], list[Trigger]] = {}
        self._ids = itertools.count(1)
        self._fired_total = 0

    def register(
        self,
        table: str,
        event: TriggerEvent | str,
        timing: TriggerTiming | str,
        callback: TriggerCallback,
        name: str | None = None,
    ) -> Trigger:
        """Register a callback; event and timing accept their SQL names."""
        event = event if isinstance(event, TriggerEvent) else TriggerEvent(event.upper())
        timing = timing if isinstance(timing, TriggerTiming) else TriggerTiming(timing.upper())
        with self._lock:
            trigger = Trigger(
                name=name or f"{table}_{timing.value.lower()}_{event.value.lower()}_{next(self._ids)}",
                table=table,
                event=event,
                timing=timing,
                callback=callback,
            )
            self._triggers.setdefault((table, event, timing), []).append(trigger)
        logger.debug("trigger_registered", trigger=trigger.name, table=table)
        return trigger

    def unregister(self, name: str) -> bool:
        with self._lock:
            for key, triggers in self._triggers.items():
                for trigger in triggers:
                    if trigger.name == name:
                        triggers.remove(trigger)
                        if not triggers:
                            del self._triggers[key]
                        return True
        return False

    def drop_table(self, table: str) -> None:
        """Forget every trigger of a dropped table."""
        with self._lock:
            for key in [k for k in self._triggers if k[0] == table]:
                del self._triggers[key]

    def has_triggers(self, table: str, event: TriggerEvent) -> bool:
        with self._lock:
            return any(
                (table, event, timing) in self._triggers for timing in TriggerTiming
            )

    def triggers_for(self, table: str, event: TriggerEvent, timing: TriggerTiming) -> list[Trigger]:
        with self._lock:
            return list(self._triggers.get((table, event, timing), ()))

    def list_triggers(self) -> list[Trigger]:
        with self._lock:
            return [t for triggers in self._triggers.values() for t in triggers]

    def fire(self, context: TriggerContext) -> dict[str, Any] | None:
        """Run the callbacks registered for the context's key.

        Returns:
            For BEFORE triggers, the row values after every replacement;
            otherwise the context's new values.

        Raises:
            TriggerFailed: If a callback raises.
        """
        for trigger in self.triggers_for(context.table, context.event, context.timing):
            self._fired_total += 1
            try:
                replacement = trigger.callback(context)
            except Exception as exc:
                logger.warning(
                    "trigger_failed",
                    trigger=trigger.name,
                    table=context.table,
                    txn_id=context.txn_id,
                    error=str(exc),
                )
                details = exc.to_dict() if isinstance(exc, DatabaseError) else {}
                raise TriggerFailed(
                    f'trigger "{trigger.name}" failed: {exc}',
                    trigger=trigger.name,
                    cause=details,
                ) from exc
            if context.timing == TriggerTiming.BEFORE and replacement is not None:
                context.new = dict(replacement)
        return context.new

    @property
    def fired_total(self) -> int:
        return self._fired_total
