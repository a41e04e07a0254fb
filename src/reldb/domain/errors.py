"""Structured error taxonomy for the query engine.

Every failure surfaced to a caller is a DatabaseError carrying an ErrorKind,
a human-readable message and a retryable flag. Callers branch on ``kind``
(or on the concrete class) instead of parsing messages.

Propagation rules:
    - Every error aborts the current statement; its partial writes and
      catalog changes are undone.
    - Retryable errors (serialization failures, deadlocks) also abort the
      enclosing transaction; the caller re-issues the whole transaction.
    - All other errors leave an explicit transaction active so the caller
      can decide between ROLLBACK and continuing.

References:
    - ISO/IEC 9075-2 SQLSTATE classes 22, 23, 40, 42
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any


class ErrorKind(Enum):
    """Category of a database error."""

    SYNTAX = auto()
    """Malformed or unsupported statement; rejected before execution."""

    CATALOG = auto()
    """Unknown or duplicate table, column, index or view; invalid DDL."""

    CONSTRAINT_VIOLATION = auto()
    """NOT NULL, UNIQUE, CHECK or FOREIGN KEY violated."""

    CARDINALITY_VIOLATION = auto()
    """Scalar subquery returned more than one row or column."""

    TYPE_MISMATCH = auto()
    """Incompatible comparison, assignment or cast."""

    LOCK_TIMEOUT = auto()
    """A lock could not be acquired within the configured timeout."""

    DEADLOCK_DETECTED = auto()
    """The transaction was chosen as a deadlock victim."""

    SERIALIZATION_FAILURE = auto()
    """A concurrent transaction made this one non-serializable."""

    ARITHMETIC = auto()
    """Division by zero or numeric overflow during evaluation."""

    TRANSACTION_STATE = auto()
    """Transaction control used in the wrong state."""

    LIMIT_EXCEEDED = auto()
    """A configured execution limit was exceeded."""


class DatabaseError(Exception):
    """Base class for all engine errors.

    Attributes:
        kind: The error category
        message: Human-readable description
        retryable: Whether re-issuing the whole transaction may succeed
    """

    kind: ErrorKind = ErrorKind.SYNTAX
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for transport (REST responses, logs)."""
        return {
            "kind": self.kind.name,
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.name}, message={self.message!r})"


# Syntax


class SQLSyntaxError(DatabaseError):
    """Statement text could not be parsed or uses unsupported syntax."""

    kind = ErrorKind.SYNTAX


class ParameterError(SQLSyntaxError):
    """Bound parameters do not match the statement's placeholders."""


class GroupingError(SQLSyntaxError):
    """A column is neither grouped nor aggregated."""


# Catalog


class CatalogError(DatabaseError):
    """Schema object lookup or definition failed."""

    kind = ErrorKind.CATALOG


class DuplicateName(CatalogError):
    """A table, view, index or column with this name already exists."""


class TableNotFound(CatalogError):
    """Referenced table or view does not exist."""


class ColumnNotFound(CatalogError):
    """Referenced column does not exist."""


class ColumnExists(CatalogError):
    """ALTER TABLE ADD COLUMN for an existing column."""


class IndexNotFound(CatalogError):
    """Referenced index does not exist."""


class ConstraintNotFound(CatalogError):
    """Referenced constraint does not exist."""


class InvalidConstraint(CatalogError):
    """A constraint definition refers to missing tables or columns."""


class ForeignKeyReferenced(CatalogError):
    """DROP TABLE without CASCADE on a table other tables reference."""


class TypeNarrowing(CatalogError):
    """Existing data cannot be converted losslessly to the new column type."""


# Constraints


class ConstraintViolation(DatabaseError):
    """A row violates an integrity constraint.

    Attributes:
        constraint: Name of the violated constraint, if known
        table: Table the row belongs to
    """

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        table: str | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.constraint = constraint
        self.table = table

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["constraint"] = self.constraint
        data["table"] = self.table
        return data


class NotNullViolation(ConstraintViolation):
    """NULL assigned to a NOT NULL column."""


class UniqueViolation(ConstraintViolation):
    """Duplicate primary or unique key."""


class CheckViolation(ConstraintViolation):
    """CHECK predicate evaluated to FALSE."""


class ForeignKeyViolation(ConstraintViolation):
    """Missing referenced row, or referenced row still has dependents."""


# Evaluation


class CardinalityViolation(DatabaseError):
    """Scalar subquery produced more than one row or column."""

    kind = ErrorKind.CARDINALITY_VIOLATION


class TypeMismatch(DatabaseError):
    """Values of incompatible types were compared, assigned or cast."""

    kind = ErrorKind.TYPE_MISMATCH


class ArithmeticFailure(DatabaseError):
    """Base class for arithmetic failures in expression evaluation."""

    kind = ErrorKind.ARITHMETIC


class DivisionByZero(ArithmeticFailure):
    """Division or modulo by zero."""


class NumericOverflow(ArithmeticFailure):
    """Value does not fit the declared precision."""


class RecursionLimitExceeded(DatabaseError):
    """Recursive query did not reach a fixed point within the limit."""

    kind = ErrorKind.LIMIT_EXCEEDED


# Concurrency


class LockTimeout(DatabaseError):
    """Lock wait exceeded the configured timeout."""

    kind = ErrorKind.LOCK_TIMEOUT


class DeadlockDetected(DatabaseError):
    """Waiting for the lock would close a cycle in the wait-for graph."""

    kind = ErrorKind.DEADLOCK_DETECTED
    retryable = True


class SerializationFailure(DatabaseError):
    """Concurrent changes conflict with this transaction's snapshot."""

    kind = ErrorKind.SERIALIZATION_FAILURE
    retryable = True


# Transaction control


class TransactionStateError(DatabaseError):
    """Transaction control statement used in the wrong state."""

    kind = ErrorKind.TRANSACTION_STATE


class NestedTransaction(TransactionStateError):
    """BEGIN while the session already has an active transaction."""


class NoActiveTransaction(TransactionStateError):
    """COMMIT or ROLLBACK without an active transaction."""


class TransactionAborted(TransactionStateError):
    """Operation on a transaction that is no longer active."""


class TriggerFailed(TransactionStateError):
    """A trigger callback raised; the writing transaction is aborted."""
