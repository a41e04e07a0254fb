"""Transaction-related types and enumerations.

These types define the lifecycle states, isolation levels and lock modes
used by the transaction manager and the lock manager.
"""

from __future__ import annotations

from enum import Enum, auto


class TransactionState(Enum):
    """Transaction lifecycle states.

    State machine:

        begin() ──> ACTIVE
                      │
              ┌───────┴───────┐
              │               │
          commit()     rollback() / failed commit
              │               │
              v               v
          COMMITTED        ABORTED

    Both COMMITTED and ABORTED are terminal. A transaction object is never
    reused after reaching them.
    """

    ACTIVE = auto()
    """Transaction is running and can execute statements."""

    COMMITTED = auto()
    """Transaction has committed. Its write-set is durable and published."""

    ABORTED = auto()
    """Transaction has been rolled back. None of its writes are visible."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (COMMITTED or ABORTED)."""
        return self in (TransactionState.COMMITTED, TransactionState.ABORTED)

    def is_active(self) -> bool:
        """Check if transaction can still perform operations."""
        return self == TransactionState.ACTIVE


class IsolationLevel(Enum):
    """Transaction isolation levels, weakest first.

    Each level keeps every guarantee of the weaker ones:

    - READ_UNCOMMITTED: sees the newest non-aborted version of a row,
      including uncommitted writes of other transactions (dirty reads).
    - READ_COMMITTED: only committed data, with a fresh snapshot for each
      statement (non-repeatable reads possible).
    - REPEATABLE_READ: one snapshot pinned at the first statement; phantom
      rows may still appear through concurrent inserts into other tables.
    - SERIALIZABLE: repeatable read plus commit-time read/write conflict
      validation; the later committer aborts with a serialization failure.

    References:
        - Berenson et al. "A Critique of ANSI SQL Isolation Levels" (1995)
        - Cahill et al. "Serializable Isolation for Snapshot Databases" (2008)
    """

    READ_UNCOMMITTED = auto()
    """Allows dirty reads."""

    READ_COMMITTED = auto()
    """Each statement sees data committed before it started."""

    REPEATABLE_READ = auto()
    """Same snapshot for the whole transaction."""

    SERIALIZABLE = auto()
    """Equivalent to some serial order of the concurrent transactions."""

    @property
    def sql_name(self) -> str:
        """The level as written in SQL, e.g. ``READ COMMITTED``."""
        return self.name.replace("_", " ")

    @property
    def pins_snapshot(self) -> bool:
        """Whether the snapshot is held for the whole transaction."""
        return self in (IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE)

    @classmethod
    def from_sql(cls, text: str) -> IsolationLevel:
        """Parse an isolation level name such as ``repeatable read``.

        Raises:
            ValueError: If the name is not a known level
        """
        key = "_".join(text.upper().split())
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown isolation level: {text!r}") from None


class LockMode(Enum):
    """Lock modes for table and row locks.

    Lock compatibility matrix:

              | S | X | IS | IX |
        ------|---|---|----|----|
        S     | Y | N | Y  | N  |
        X     | N | N | N  | N  |
        IS    | Y | N | Y  | Y  |
        IX    | N | N | Y  | Y  |

    Where Y = compatible, N = not compatible. Writers take IX on the table
    and X on each row they change; DDL takes X on the table.

    References:
        - Gray & Reuter "Transaction Processing" (1993)
    """

    SHARED = auto()
    """Shared lock (S) - allows concurrent readers, blocks writers."""

    EXCLUSIVE = auto()
    """Exclusive lock (X) - blocks all other access."""

    INTENT_SHARED = auto()
    """Intent shared (IS) - intention to take S locks on rows."""

    INTENT_EXCLUSIVE = auto()
    """Intent exclusive (IX) - intention to take X locks on rows."""

    def is_compatible(self, other: LockMode) -> bool:
        """Check if this lock mode is compatible with another.

        Args:
            other: The other lock mode to check compatibility with

        Returns:
            True if the locks can be held simultaneously by different transactions
        """
        compatibility = {
            LockMode.SHARED: {LockMode.SHARED, LockMode.INTENT_SHARED},
            LockMode.EXCLUSIVE: set(),
            LockMode.INTENT_SHARED: {
                LockMode.SHARED, LockMode.INTENT_SHARED, LockMode.INTENT_EXCLUSIVE
            },
            LockMode.INTENT_EXCLUSIVE: {
                LockMode.INTENT_SHARED, LockMode.INTENT_EXCLUSIVE
            },
        }
        return other in compatibility.get(self, set())

    def covers(self, other: LockMode) -> bool:
        """Check if holding this mode makes a request for ``other`` redundant."""
        if self == other or self == LockMode.EXCLUSIVE:
            return True
        if self == LockMode.SHARED:
            return other == LockMode.INTENT_SHARED
        if self == LockMode.INTENT_EXCLUSIVE:
            return other == LockMode.INTENT_SHARED
        return False


class WaitPolicy(Enum):
    """Policy for handling lock conflicts.

    Determines behavior when a lock request cannot be immediately granted.
    """

    WAIT = auto()
    """Block until the lock is available or the timeout elapses."""

    NO_WAIT = auto()
    """Immediately fail if the lock is not available."""
