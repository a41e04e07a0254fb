"""Unit tests for LockManager (strict 2PL for writers)."""

from __future__ import annotations

import threading
import time

import pytest

from reldb.domain.errors import DeadlockDetected, LockTimeout
from reldb.domain.services import LockManager
from reldb.domain.value_objects import RowId, RowLocator, TableId, TransactionId
from reldb.domain.value_objects.transaction_types import LockMode, WaitPolicy

pytestmark = pytest.mark.unit

T1, T2, T3 = TransactionId(1), TransactionId(2), TransactionId(3)
TABLE = ("table", "accounts")
ROW = RowLocator(TableId(1), RowId(1))


class TestLockManagerBasic:
    """Basic lock manager tests."""

    @pytest.fixture
    def lock_manager(self) -> LockManager:
        """Create a lock manager for testing."""
        return LockManager(timeout_ms=200, deadlock_detection=True)

    def test_acquire_exclusive_lock(self, lock_manager: LockManager) -> None:
        """Exclusive lock can be acquired on a free resource."""
        assert lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE) is True
        assert ROW in lock_manager.get_locks_held(T1)
        assert lock_manager.holds(T1, ROW, LockMode.EXCLUSIVE)

    def test_intent_locks_compatible(self, lock_manager: LockManager) -> None:
        """Two writers can both hold IX on a table."""
        assert lock_manager.acquire(T1, TABLE, LockMode.INTENT_EXCLUSIVE)
        assert lock_manager.acquire(T2, TABLE, LockMode.INTENT_EXCLUSIVE)

    def test_exclusive_conflicts_no_wait(self, lock_manager: LockManager) -> None:
        """NO_WAIT reports a conflict instead of blocking."""
        lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE)
        result = lock_manager.acquire(T2, ROW, LockMode.EXCLUSIVE, wait_policy=WaitPolicy.NO_WAIT)
        assert result is False

    def test_table_exclusive_blocks_writers(self, lock_manager: LockManager) -> None:
        """DDL's X table lock conflicts with a writer's IX."""
        lock_manager.acquire(T1, TABLE, LockMode.EXCLUSIVE)
        assert not lock_manager.acquire(
            T2, TABLE, LockMode.INTENT_EXCLUSIVE, wait_policy=WaitPolicy.NO_WAIT
        )

    def test_reacquire_is_noop(self, lock_manager: LockManager) -> None:
        """Requesting a covered mode again succeeds immediately."""
        lock_manager.acquire(T1, TABLE, LockMode.EXCLUSIVE)
        assert lock_manager.acquire(T1, TABLE, LockMode.INTENT_EXCLUSIVE) is True
        assert lock_manager.get_stats().acquired_total == 1

    def test_upgrade_without_other_holders(self, lock_manager: LockManager) -> None:
        """IX upgrades to X when no one else holds the table."""
        lock_manager.acquire(T1, TABLE, LockMode.INTENT_EXCLUSIVE)
        assert lock_manager.acquire(T1, TABLE, LockMode.EXCLUSIVE) is True

    def test_release_all(self, lock_manager: LockManager) -> None:
        """release_all frees every resource of the transaction."""
        lock_manager.acquire(T1, TABLE, LockMode.INTENT_EXCLUSIVE)
        lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE)

        assert lock_manager.release_all(T1) == 2
        assert lock_manager.get_locks_held(T1) == []
        assert lock_manager.acquire(T2, ROW, LockMode.EXCLUSIVE, wait_policy=WaitPolicy.NO_WAIT)

    def test_timeout(self, lock_manager: LockManager) -> None:
        """A blocked request fails with LockTimeout after the timeout."""
        lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE)

        started = time.monotonic()
        with pytest.raises(LockTimeout) as exc_info:
            lock_manager.acquire(T2, ROW, LockMode.EXCLUSIVE, timeout_ms=50)

        assert time.monotonic() - started >= 0.04
        assert exc_info.value.retryable is False
        assert lock_manager.get_stats().timeouts_total == 1
        assert lock_manager.waiting_for(T2) == set()


class TestLockManagerWaiting:
    """Tests where a waiter is woken by a release."""

    def test_waiter_granted_after_release(self) -> None:
        """A blocked writer proceeds once the holder finishes."""
        observed: list[float] = []
        lock_manager = LockManager(timeout_ms=2000, wait_observer=observed.append)
        lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE)
        granted = threading.Event()

        def waiter() -> None:
            lock_manager.acquire(T2, ROW, LockMode.EXCLUSIVE)
            granted.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.05)
        assert not granted.is_set()
        assert lock_manager.waiting_for(T2) == {T1}

        lock_manager.release_all(T1)
        thread.join(timeout=2)

        assert granted.is_set()
        assert lock_manager.holds(T2, ROW, LockMode.EXCLUSIVE)
        assert len(observed) == 1 and observed[0] > 0


class TestDeadlockDetection:
    """Tests for wait-for graph cycle detection."""

    def test_two_party_deadlock(self) -> None:
        """The requester closing the cycle is the victim."""
        lock_manager = LockManager(timeout_ms=2000, deadlock_detection=True)
        a = RowLocator(TableId(1), RowId(1))
        b = RowLocator(TableId(1), RowId(2))
        lock_manager.acquire(T1, a, LockMode.EXCLUSIVE)
        lock_manager.acquire(T2, b, LockMode.EXCLUSIVE)

        errors: list[Exception] = []

        def t1_wants_b() -> None:
            try:
                lock_manager.acquire(T1, b, LockMode.EXCLUSIVE)
            except DeadlockDetected as e:
                errors.append(e)

        thread = threading.Thread(target=t1_wants_b)
        thread.start()
        deadline = time.monotonic() + 2
        while not lock_manager.waiting_for(T1) and time.monotonic() < deadline:
            time.sleep(0.01)

        with pytest.raises(DeadlockDetected) as exc_info:
            lock_manager.acquire(T2, a, LockMode.EXCLUSIVE)
        assert exc_info.value.retryable is True

        # The victim aborts and releases; T1 then gets its lock.
        lock_manager.release_all(T2)
        thread.join(timeout=2)
        assert errors == []
        assert lock_manager.holds(T1, b, LockMode.EXCLUSIVE)
        assert lock_manager.get_stats().deadlocks_total == 1

    def test_three_party_cycle(self) -> None:
        """Cycles longer than two edges are found too."""
        lock_manager = LockManager(timeout_ms=2000, deadlock_detection=True)
        rows = [RowLocator(TableId(1), RowId(i)) for i in range(3)]
        for txn, row in zip((T1, T2, T3), rows):
            lock_manager.acquire(txn, row, LockMode.EXCLUSIVE)

        threads = [
            threading.Thread(target=lambda: _swallow(lock_manager, T1, rows[1])),
            threading.Thread(target=lambda: _swallow(lock_manager, T2, rows[2])),
        ]
        for t in threads:
            t.start()
        deadline = time.monotonic() + 2
        while (
            not (lock_manager.waiting_for(T1) and lock_manager.waiting_for(T2))
            and time.monotonic() < deadline
        ):
            time.sleep(0.01)

        with pytest.raises(DeadlockDetected):
            lock_manager.acquire(T3, rows[0], LockMode.EXCLUSIVE)

        for txn in (T3, T2, T1):
            lock_manager.release_all(txn)
        for t in threads:
            t.join(timeout=2)

    def test_detection_disabled_times_out(self) -> None:
        """Without detection, a deadlock ends in a lock timeout."""
        lock_manager = LockManager(timeout_ms=50, deadlock_detection=False)
        lock_manager.acquire(T1, ROW, LockMode.EXCLUSIVE)
        lock_manager._wait_for[T1] = {T2}  # T1 already waits for T2

        with pytest.raises(LockTimeout):
            lock_manager.acquire(T2, ROW, LockMode.EXCLUSIVE)


def _swallow(lock_manager: LockManager, txn: TransactionId, resource: RowLocator) -> None:
    try:
        lock_manager.acquire(txn, resource, LockMode.EXCLUSIVE)
    except (DeadlockDetected, LockTimeout):
        lock_manager.release_all(txn)
