"""Domain services for business logic.

Services implement complex domain logic that doesn't naturally
fit within a single entity. They coordinate between entities
and value objects to perform operations.
"""

from reldb.domain.services.btree_index import BTreeIndex, BTreeIndexManager
from reldb.domain.services.catalog import Catalog, DDLResult
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.services.recovery_service import RecoveryError, RecoveryService, RecoveryStats
from reldb.domain.services.storage_engine import StorageEngine, TableHeap
from reldb.domain.services.transaction_manager import MVCCTransactionManager
from reldb.domain.services.trigger_registry import (
    Trigger,
    TriggerContext,
    TriggerEvent,
    TriggerRegistry,
    TriggerTiming,
)

__all__ = [
    "BTreeIndex",
    "BTreeIndexManager",
    "Catalog",
    "DDLResult",
    "LockManager",
    "MVCCTransactionManager",
    "RecoveryError",
    "RecoveryService",
    "RecoveryStats",
    "StorageEngine",
    "TableHeap",
    "Trigger",
    "TriggerContext",
    "TriggerEvent",
    "TriggerRegistry",
    "TriggerTiming",
]
