"""Lock Manager for two-phase locking (2PL) of writers.

This module implements the lock manager used to serialize conflicting
writes. Reads never take locks (they use MVCC snapshots); writers take
an intent lock on the table and an exclusive lock on each row they change,
and DDL takes an exclusive table lock.

Lock Modes:
    - SHARED (S): Multiple readers allowed
    - EXCLUSIVE (X): Single writer only
    - INTENT_SHARED (IS): Intent to acquire S locks on rows
    - INTENT_EXCLUSIVE (IX): Intent to acquire X locks on rows

Two-Phase Locking:
    1. Growing phase: Transaction acquires locks as statements run
    2. Shrinking phase: All locks are released at commit/abort

Blocked requests wait on a condition variable until the conflicting
holders finish or the timeout elapses. Before every wait the requester
updates its edges in the wait-for graph; if that closes a cycle, the
requester is the deadlock victim.

References:
    - Gray & Reuter, "Transaction Processing" (1993)
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Set

from reldb.domain.errors import DeadlockDetected, LockTimeout
from reldb.domain.value_objects import TransactionId
from reldb.domain.value_objects.transaction_types import LockMode, WaitPolicy
from reldb.infrastructure.logging import get_logger


logger = get_logger(__name__, component="lock_manager")

DEFAULT_LOCK_TIMEOUT_MS = 5000


@dataclass
class LockEntry:
    """Entry in the lock table for a resource."""

    # Granted locks: txn_id -> modes held on this resource
    granted: Dict[TransactionId, Set[LockMode]] = field(default_factory=dict)
    waiters: int = 0

    def blockers(self, txn_id: TransactionId, mode: LockMode) -> Set[TransactionId]:
        """Transactions holding a mode incompatible with the request."""
        return {
            holder
            for holder, modes in self.granted.items()
            if holder != txn_id and any(not held.is_compatible(mode) for held in modes)
        }

    def is_idle(self) -> bool:
        return not self.granted and self.waiters == 0


@dataclass
class LockStats:
    """Statistics for lock monitoring."""

    locked_resources: int
    waiting_transactions: int
    acquired_total: int
    waits_total: int
    timeouts_total: int
    deadlocks_total: int


class LockManager:
    """Lock manager implementing strict two-phase locking.

    Resources are arbitrary hashable keys: the engine locks tables by
    ``("table", name)`` and rows by RowLocator.

    Thread Safety:
        All operations are thread-safe; a single condition variable guards
        the lock table and the wait-for graph.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        deadlock_detection: bool = True,
        wait_observer: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the lock manager.

        Args:
            timeout_ms: Default maximum wait for a lock.
            deadlock_detection: Whether to search the wait-for graph.
            wait_observer: Called with the seconds spent in each blocked wait.
        """
        self._cond = threading.Condition(threading.Lock())
        self._timeout_ms = timeout_ms
        self._deadlock_detection = deadlock_detection
        self._wait_observer = wait_observer

        self._lock_table: Dict[Hashable, LockEntry] = {}
        # Wait-for graph: txn_id -> set of txn_ids it's waiting for
        self._wait_for: Dict[TransactionId, Set[TransactionId]] = {}
        # Resources locked by each transaction
        self._txn_locks: Dict[TransactionId, Set[Hashable]] = defaultdict(set)

        self._acquired_total = 0
        self._waits_total = 0
        self._timeouts_total = 0
        self._deadlocks_total = 0

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    def acquire(
        self,
        txn_id: TransactionId,
        resource: Hashable,
        mode: LockMode,
        timeout_ms: int | None = None,
        wait_policy: WaitPolicy = WaitPolicy.WAIT,
    ) -> bool:
        """Acquire a lock on a resource, waiting if necessary.

        Re-requesting a mode already covered by a held mode is a no-op.
        Upgrades (e.g. IX to X) wait only for other holders.

        Args:
            txn_id: The requesting transaction.
            resource: The resource to lock.
            mode: The lock mode requested.
            timeout_ms: Max time to wait (None = manager default).
            wait_policy: WAIT to block, NO_WAIT to fail immediately.

        Returns:
            True if the lock is held, False on conflict under NO_WAIT.

        Raises:
            DeadlockDetected: If waiting would close a wait-for cycle.
            LockTimeout: If the lock was not granted in time.
        """
        timeout = self._timeout_ms if timeout_ms is None else timeout_ms
        deadline = time.monotonic() + timeout / 1000.0

        with self._cond:
            entry = self._lock_table.get(resource)
            if entry is None:
                entry = self._lock_table[resource] = LockEntry()

            held = entry.granted.get(txn_id, set())
            if any(h.covers(mode) for h in held):
                return True

            blocking = entry.blockers(txn_id, mode)
            if blocking and wait_policy == WaitPolicy.NO_WAIT:
                self._discard_if_idle(resource, entry)
                return False

            wait_started = time.monotonic() if blocking else None
            if blocking:
                self._waits_total += 1

            entry.waiters += 1
            try:
                while blocking:
                    self._wait_for[txn_id] = blocking
                    if self._deadlock_detection and self._has_cycle(txn_id):
                        self._deadlocks_total += 1
                        logger.warning(
                            "deadlock_detected",
                            txn_id=txn_id,
                            resource=str(resource),
                            waiting_for=sorted(blocking),
                        )
                        raise DeadlockDetected(
                            f"deadlock detected: transaction {txn_id} waiting for "
                            f"{sorted(blocking)} on {resource}",
                            txn_id=txn_id,
                        )

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        self._timeouts_total += 1
                        logger.info(
                            "lock_timeout",
                            txn_id=txn_id,
                            resource=str(resource),
                            mode=mode.name,
                            timeout_ms=timeout,
                        )
                        raise LockTimeout(
                            f"lock timeout after {timeout} ms: transaction {txn_id} "
                            f"waiting for {mode.name} on {resource}",
                            txn_id=txn_id,
                        )

                    self._cond.wait(remaining)
                    blocking = entry.blockers(txn_id, mode)
            finally:
                entry.waiters -= 1
                self._wait_for.pop(txn_id, None)
                if wait_started is not None and self._wait_observer is not None:
                    self._wait_observer(time.monotonic() - wait_started)

            entry.granted.setdefault(txn_id, set()).add(mode)
            self._txn_locks[txn_id].add(resource)
            self._acquired_total += 1
            return True

    def release_all(self, txn_id: TransactionId) -> int:
        """Release all locks held by a transaction.

        Called during commit or abort.

        Returns:
            Number of resources released.
        """
        with self._cond:
            resources = self._txn_locks.pop(txn_id, set())
            for resource in resources:
                entry = self._lock_table.get(resource)
                if entry is None:
                    continue
                entry.granted.pop(txn_id, None)
                self._discard_if_idle(resource, entry)

            self._wait_for.pop(txn_id, None)
            if resources:
                self._cond.notify_all()
            return len(resources)

    def holds(self, txn_id: TransactionId, resource: Hashable, mode: LockMode) -> bool:
        """Check if txn holds a mode covering ``mode`` on resource."""
        with self._cond:
            entry = self._lock_table.get(resource)
            if entry is None:
                return False
            return any(h.covers(mode) for h in entry.granted.get(txn_id, set()))

    def get_locks_held(self, txn_id: TransactionId) -> list[Hashable]:
        """Get all resources locked by a transaction."""
        with self._cond:
            return list(self._txn_locks.get(txn_id, set()))

    def waiting_for(self, txn_id: TransactionId) -> Set[TransactionId]:
        """Transactions txn is currently blocked on (empty if not waiting)."""
        with self._cond:
            return set(self._wait_for.get(txn_id, set()))

    def get_stats(self) -> LockStats:
        with self._cond:
            return LockStats(
                locked_resources=len(self._lock_table),
                waiting_transactions=len(self._wait_for),
                acquired_total=self._acquired_total,
                waits_total=self._waits_total,
                timeouts_total=self._timeouts_total,
                deadlocks_total=self._deadlocks_total,
            )

    def _discard_if_idle(self, resource: Hashable, entry: LockEntry) -> None:
        if entry.is_idle() and self._lock_table.get(resource) is entry:
            del self._lock_table[resource]

    def _has_cycle(self, start_txn: TransactionId) -> bool:
        """Check for a cycle through start_txn in the wait-for graph."""
        visited = set()
        stack = list(self._wait_for.get(start_txn, set()))

        while stack:
            txn = stack.pop()
            if txn == start_txn:
                return True
            if txn in visited:
                continue
            visited.add(txn)
            stack.extend(self._wait_for.get(txn, set()))

        return False
