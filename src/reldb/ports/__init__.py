"""Ports layer - interface definitions following Hexagonal Architecture.

Ports are abstract interfaces (protocols) that define contracts:
- Inbound ports: APIs offered to upper layers (e.g., IndexManager, TransactionManager)
- Outbound ports: Dependencies on external systems (e.g., CommitLog)

Adapters implement these ports with concrete functionality.
"""

from reldb.ports.inbound import (
    Index,
    IndexManager,
    IndexMetadata,
    IndexStats,
    Savepoint,
    Transaction,
    TransactionManager,
    TransactionStats,
    WriteKind,
    WriteRecord,
)
from reldb.ports.outbound import (
    CommitLog,
    CommitRecord,
    OperationKind,
    RowOperation,
    SyncMode,
)

__all__ = [
    # Inbound ports
    "Index",
    "IndexManager",
    "IndexMetadata",
    "IndexStats",
    "Savepoint",
    "Transaction",
    "TransactionManager",
    "TransactionStats",
    "WriteKind",
    "WriteRecord",
    # Outbound ports
    "CommitLog",
    "CommitRecord",
    "OperationKind",
    "RowOperation",
    "SyncMode",
]
