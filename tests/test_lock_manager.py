import threading
import time

import pytest

from dbkernel.lock_manager import LockManager, are_locks_compatible, can_lock_upgrade
from dbkernel.transaction import (
    RID,
    AbortReason,
    IsolationLevel,
    LockMode,
    Transaction,
    TransactionAbortError,
    TransactionState,
)

S = LockMode.SHARED
X = LockMode.EXCLUSIVE
IS = LockMode.INTENTION_SHARED
IX = LockMode.INTENTION_EXCLUSIVE
SIX = LockMode.SHARED_INTENTION_EXCLUSIVE


@pytest.mark.parametrize(
    "held, requested, expected",
    [
        (S, S, True),
        (S, X, False),
        (IS, X, False),
        (IS, SIX, True),
        (IX, IX, True),
        (IX, S, False),
        (SIX, IS, True),
        (SIX, S, False),
        (X, IS, False),
    ],
)
def test_are_locks_compatible(held, requested, expected):
    assert are_locks_compatible(held, requested) is expected


@pytest.mark.parametrize(
    "current, requested, expected",
    [
        (IS, X, True),
        (IS, IS, False),
        (S, SIX, True),
        (S, IX, False),
        (IX, X, True),
        (SIX, X, True),
        (X, S, False),
    ],
)
def test_can_lock_upgrade(current, requested, expected):
    assert can_lock_upgrade(current, requested) is expected


def _run(target, *args):
    result = {}

    def body():
        try:
            result["value"] = target(*args)
        except TransactionAbortError as exc:
            result["error"] = exc

    thread = threading.Thread(target=body, daemon=True)
    thread.start()
    return thread, result


def test_lock_table_records_lock():
    lm = LockManager()
    txn = Transaction(1)
    assert lm.lock_table(txn, S, 7) is True
    assert txn.holds_table_lock(7, S)


def test_shared_lock_on_read_uncommitted_aborts():
    lm = LockManager()
    txn = Transaction(1, IsolationLevel.READ_UNCOMMITTED)
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_table(txn, IS, 1)
    assert info.value.reason is AbortReason.LOCK_SHARED_ON_READ_UNCOMMITTED
    assert txn.state is TransactionState.ABORTED


def test_aborted_transaction_gets_no_lock():
    lm = LockManager()
    txn = Transaction(1)
    txn.state = TransactionState.ABORTED
    assert lm.lock_table(txn, X, 1) is False
    assert not txn.holds_table_lock(1, X)


def test_lock_on_shrinking_repeatable_read():
    lm = LockManager()
    txn = Transaction(1)
    txn.state = TransactionState.SHRINKING
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_table(txn, IS, 1)
    assert info.value.reason is AbortReason.LOCK_ON_SHRINKING


def test_read_committed_may_take_shared_while_shrinking():
    lm = LockManager()
    txn = Transaction(1, IsolationLevel.READ_COMMITTED)
    txn.state = TransactionState.SHRINKING
    assert lm.lock_table(txn, S, 1) is True
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_table(txn, IX, 2)
    assert info.value.reason is AbortReason.LOCK_ON_SHRINKING


def test_upgrade_replaces_held_mode():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, S, 3)
    assert lm.lock_table(txn, X, 3) is True
    assert txn.holds_table_lock(3, X)
    assert not txn.holds_table_lock(3, S)


def test_incompatible_upgrade_aborts():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, X, 3)
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_table(txn, S, 3)
    assert info.value.reason is AbortReason.INCOMPATIBLE_UPGRADE


def test_unlock_without_lock_aborts():
    lm = LockManager()
    txn = Transaction(1)
    with pytest.raises(TransactionAbortError) as info:
        lm.unlock_table(txn, 5)
    assert info.value.reason is AbortReason.ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD


def test_unlock_shared_repeatable_read_shrinks():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, S, 1)
    assert lm.unlock_table(txn, 1) is True
    assert txn.state is TransactionState.SHRINKING
    assert not txn.holds_table_lock(1, S)


def test_unlock_intention_lock_keeps_growing():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, IS, 1)
    lm.unlock_table(txn, 1)
    assert txn.state is TransactionState.GROWING


def test_unlock_table_before_rows_aborts():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, IX, 1)
    lm.lock_row(txn, X, 1, RID(0, 0))
    with pytest.raises(TransactionAbortError) as info:
        lm.unlock_table(txn, 1)
    assert info.value.reason is AbortReason.TABLE_UNLOCKED_BEFORE_UNLOCKING_ROWS


def test_row_locks():
    lm = LockManager()
    txn = Transaction(1)
    rid = RID(2, 3)
    lm.lock_table(txn, IS, 1)
    assert lm.lock_row(txn, S, 1, rid) is True
    assert txn.row_lock_set(S) == {1: {rid}}
    assert lm.unlock_row(txn, 1, rid, force=True) is True
    assert txn.row_lock_set(S) == {}
    assert txn.state is TransactionState.GROWING


def test_intention_lock_on_row_aborts():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, IX, 1)
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_row(txn, IX, 1, RID(0, 0))
    assert info.value.reason is AbortReason.ATTEMPTED_INTENTION_LOCK_ON_ROW


def test_exclusive_row_needs_exclusive_table_lock():
    lm = LockManager()
    txn = Transaction(1)
    lm.lock_table(txn, IS, 1)
    with pytest.raises(TransactionAbortError) as info:
        lm.lock_row(txn, X, 1, RID(0, 0))
    assert info.value.reason is AbortReason.TABLE_LOCK_NOT_PRESENT


def test_conflicting_request_waits_until_unlock():
    lm = LockManager()
    writer = Transaction(1)
    reader = Transaction(2)
    lm.lock_table(writer, X, 1)
    thread, result = _run(lm.lock_table, reader, S, 1)
    time.sleep(0.05)
    assert thread.is_alive()
    lm.unlock_table(writer, 1)
    thread.join(timeout=2)
    assert result.get("value") is True
    assert reader.holds_table_lock(1, S)


def test_edges_and_cycle():
    lm = LockManager()
    lm.add_edge(1, 2)
    lm.add_edge(2, 3)
    assert lm.has_cycle() is None
    lm.add_edge(3, 1)
    assert sorted(lm.get_edge_list()) == [(1, 2), (2, 3), (3, 1)]
    assert lm.has_cycle() == 3
    lm.remove_edge(3, 1)
    assert lm.has_cycle() is None


def test_detect_deadlock_aborts_youngest():
    lm = LockManager()
    old = Transaction(1)
    young = Transaction(2)
    lm.lock_table(old, X, 10)
    lm.lock_table(young, X, 20)
    old_thread, old_result = _run(lm.lock_table, old, X, 20)
    young_thread, young_result = _run(lm.lock_table, young, X, 10)
    victim = None
    deadline = time.monotonic() + 2
    while victim is None and time.monotonic() < deadline:
        time.sleep(0.01)
        victim = lm.detect_deadlocks()
    young_thread.join(timeout=2)
    old_thread.join(timeout=2)
    assert victim == 2
    assert young.state is TransactionState.ABORTED
    assert young_result.get("value") is False
    assert old_result.get("value") is True
    assert old.holds_table_lock(20, X)


def test_run_cycle_detection_stops():
    lm = LockManager(cycle_detection_interval=0.01)
    lm.add_edge(1, 2)
    thread = threading.Thread(target=lm.run_cycle_detection, daemon=True)
    thread.start()
    time.sleep(0.05)
    lm.stop_cycle_detection()
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert lm.get_edge_list() == []