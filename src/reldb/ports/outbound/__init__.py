"""Outbound ports - interfaces for external dependencies.

Outbound ports define contracts for external systems that the
database engine depends on, such as commit log persistence.
"""

from reldb.ports.outbound.commit_log import (
    CommitLog,
    CommitRecord,
    OperationKind,
    RowOperation,
    SyncMode,
)

__all__ = [
    "CommitLog",
    "CommitRecord",
    "OperationKind",
    "RowOperation",
    "SyncMode",
]
