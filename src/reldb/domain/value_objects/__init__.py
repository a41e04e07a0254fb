"""Value objects for the query engine domain.

Value objects are immutable types that represent domain concepts.
They have no identity - two value objects with the same attributes are equal.

Exports:
    Identifiers:
        - TableId: Type-safe table identifier
        - RowId: Stable logical row identifier shared by all row versions
        - TransactionId: Type-safe transaction identifier
        - Timestamp: Logical commit timestamp
        - RowLocator: (table_id, row_id) pair used as a lock resource
        - INVALID_TABLE_ID, INVALID_TXN_ID, INITIAL_TIMESTAMP: Sentinel values

    Transaction Types:
        - TransactionState: Transaction lifecycle states (ACTIVE, COMMITTED, ABORTED)
        - IsolationLevel: READ_UNCOMMITTED through SERIALIZABLE
        - LockMode: Table and row lock modes (SHARED, EXCLUSIVE, intents)
        - WaitPolicy: Lock conflict handling policies

    Data Types:
        - TypeKind: Scalar type families
        - ColumnType: Declared column type with precision/scale/length
        - infer_type, align_for_comparison: Runtime type helpers
"""

from reldb.domain.value_objects.data_types import (
    BOOLEAN,
    DATE,
    DECIMAL,
    INTEGER,
    TEXT,
    TIMESTAMP,
    ColumnType,
    TypeKind,
    align_for_comparison,
    infer_type,
    type_family,
)
from reldb.domain.value_objects.identifiers import (
    INITIAL_TIMESTAMP,
    INVALID_TABLE_ID,
    INVALID_TXN_ID,
    RowId,
    RowLocator,
    TableId,
    Timestamp,
    TransactionId,
)
from reldb.domain.value_objects.transaction_types import (
    IsolationLevel,
    LockMode,
    TransactionState,
    WaitPolicy,
)

__all__ = [
    # Identifiers
    "TableId",
    "RowId",
    "TransactionId",
    "Timestamp",
    "RowLocator",
    "INVALID_TABLE_ID",
    "INVALID_TXN_ID",
    "INITIAL_TIMESTAMP",
    # Transaction types
    "TransactionState",
    "IsolationLevel",
    "LockMode",
    "WaitPolicy",
    # Data types
    "TypeKind",
    "ColumnType",
    "INTEGER",
    "DECIMAL",
    "TEXT",
    "DATE",
    "TIMESTAMP",
    "BOOLEAN",
    "infer_type",
    "type_family",
    "align_for_comparison",
]
