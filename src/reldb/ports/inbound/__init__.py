"""Inbound ports - API contracts for the database engine.

Inbound ports define the interfaces that upper layers use to
interact with indexes and the transaction manager.
"""

from reldb.ports.inbound.index_manager import (
    Index,
    IndexManager,
    IndexMetadata,
    IndexStats,
)
from reldb.ports.inbound.transaction_manager import (
    Savepoint,
    Transaction,
    TransactionManager,
    TransactionStats,
    WriteKind,
    WriteRecord,
)

__all__ = [
    # Index Manager
    "Index",
    "IndexManager",
    "IndexMetadata",
    "IndexStats",
    # Transaction Manager
    "Savepoint",
    "Transaction",
    "TransactionManager",
    "TransactionStats",
    "WriteKind",
    "WriteRecord",
]
