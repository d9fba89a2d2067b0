"""Two-phase lock manager for tables and rows, with deadlock detection."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Tuple

from dbkernel.transaction import (
    INVALID_TXN_ID,
    AbortReason,
    IsolationLevel,
    LockMode,
    RID,
    Transaction,
    TransactionAbortError,
    TransactionState,
)
from dbkernel.waits_for import WaitsForGraph

DEFAULT_CYCLE_DETECTION_INTERVAL = 0.05

_INTENTION_MODES = frozenset(
    {
        LockMode.INTENTION_SHARED,
        LockMode.INTENTION_EXCLUSIVE,
        LockMode.SHARED_INTENTION_EXCLUSIVE,
    }
)
_SHARED_TABLE_MODES = frozenset(
    {
        LockMode.INTENTION_SHARED,
        LockMode.SHARED,
        LockMode.SHARED_INTENTION_EXCLUSIVE,
    }
)
_ROW_EXCLUSIVE_PARENTS = frozenset(
    {
        LockMode.EXCLUSIVE,
        LockMode.INTENTION_EXCLUSIVE,
        LockMode.SHARED_INTENTION_EXCLUSIVE,
    }
)


def are_locks_compatible(held: LockMode, requested: LockMode) -> bool:
    """Whether ``requested`` may be granted alongside an already granted ``held``."""
    if held is LockMode.INTENTION_SHARED:
        return requested is not LockMode.EXCLUSIVE
    if held is LockMode.INTENTION_EXCLUSIVE:
        return requested in (LockMode.INTENTION_SHARED, LockMode.INTENTION_EXCLUSIVE)
    if held is LockMode.SHARED:
        return requested in (LockMode.INTENTION_SHARED, LockMode.SHARED)
    if held is LockMode.SHARED_INTENTION_EXCLUSIVE:
        return requested is LockMode.INTENTION_SHARED
    return False


def can_lock_upgrade(current: LockMode, requested: LockMode) -> bool:
    """Whether a held ``current`` lock may be upgraded to ``requested``."""
    if current is LockMode.INTENTION_SHARED:
        return requested is not LockMode.INTENTION_SHARED
    if current in (LockMode.SHARED, LockMode.INTENTION_EXCLUSIVE):
        return requested in (LockMode.EXCLUSIVE, LockMode.SHARED_INTENTION_EXCLUSIVE)
    if current is LockMode.SHARED_INTENTION_EXCLUSIVE:
        return requested is LockMode.EXCLUSIVE
    return False


@dataclass(eq=False)
class _LockRequest:
    txn: Transaction
    lock_mode: LockMode
    oid: int
    rid: Optional[RID] = None
    granted: bool = False


class _RequestQueue:
    """FIFO of lock requests on one table or row; granted requests come first."""

    def __init__(self) -> None:
        self.requests: List[_LockRequest] = []
        self.cond = threading.Condition()
        self.upgrading = INVALID_TXN_ID

    def grant(self) -> None:
        granted_modes: List[LockMode] = []
        for request in self.requests:
            if granted_modes and not all(
                are_locks_compatible(mode, request.lock_mode) for mode in granted_modes
            ):
                break
            request.granted = True
            granted_modes.append(request.lock_mode)

    def granted_of(self, txn_id: int) -> Optional[_LockRequest]:
        return next(
            (r for r in self.requests if r.granted and r.txn.txn_id == txn_id), None
        )

    def first_waiting_index(self) -> int:
        return next(
            (i for i, r in enumerate(self.requests) if not r.granted),
            len(self.requests),
        )


class LockManager:
    """Grants table and row locks under two-phase locking and breaks deadlocks."""

    def __init__(
        self, cycle_detection_interval: float = DEFAULT_CYCLE_DETECTION_INTERVAL
    ) -> None:
        self.cycle_detection_interval = cycle_detection_interval
        self.txn_manager = None
        self._table_queues: Dict[int, _RequestQueue] = {}
        self._row_queues: Dict[RID, _RequestQueue] = {}
        self._transactions: Dict[int, Transaction] = {}
        self._map_lock = threading.Lock()
        self._waits_for = WaitsForGraph()
        self._stop = threading.Event()

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _abort(txn: Transaction, reason: AbortReason) -> TransactionAbortError:
        txn.state = TransactionState.ABORTED
        return TransactionAbortError(txn.txn_id, reason)

    def _queue(self, mapping: Dict, key: Hashable, txn: Transaction) -> _RequestQueue:
        with self._map_lock:
            self._transactions[txn.txn_id] = txn
            return mapping.setdefault(key, _RequestQueue())

    def _existing_queue(self, mapping: Dict, key: Hashable) -> Optional[_RequestQueue]:
        with self._map_lock:
            return mapping.get(key)

    def _all_queues(self) -> List[_RequestQueue]:
        with self._map_lock:
            return [*self._table_queues.values(), *self._row_queues.values()]

    @staticmethod
    def _remember(txn: Transaction, request: _LockRequest) -> None:
        if request.rid is None:
            txn.table_lock_set(request.lock_mode).add(request.oid)
        elif request.lock_mode in (LockMode.SHARED, LockMode.EXCLUSIVE):
            rows = txn.row_lock_set(request.lock_mode)
            rows.setdefault(request.oid, set()).add(request.rid)

    @staticmethod
    def _forget(txn: Transaction, request: _LockRequest) -> None:
        if request.rid is None:
            txn.table_lock_set(request.lock_mode).discard(request.oid)
        elif request.lock_mode in (LockMode.SHARED, LockMode.EXCLUSIVE):
            rows = txn.row_lock_set(request.lock_mode)
            held = rows.get(request.oid)
            if held is not None:
                held.discard(request.rid)
                if not held:
                    del rows[request.oid]

    def _acquire(self, queue: _RequestQueue, request: _LockRequest) -> bool:
        txn = request.txn
        txn_id = txn.txn_id
        with queue.cond:
            held = next(
                (
                    r
                    for r in itertools.takewhile(lambda r: r.granted, queue.requests)
                    if r.txn.txn_id == txn_id
                ),
                None,
            )
            if held is not None:
                if not can_lock_upgrade(held.lock_mode, request.lock_mode):
                    raise self._abort(txn, AbortReason.INCOMPATIBLE_UPGRADE)
                if queue.upgrading != INVALID_TXN_ID:
                    raise self._abort(txn, AbortReason.UPGRADE_CONFLICT)
                self._forget(txn, held)
                queue.requests.remove(held)
                queue.requests.insert(queue.first_waiting_index(), request)
                queue.upgrading = txn_id
            else:
                queue.requests.append(request)

            def ready() -> bool:
                queue.grant()
                return request.granted or txn.state is TransactionState.ABORTED

            queue.cond.wait_for(ready)
            if queue.upgrading == txn_id:
                queue.upgrading = INVALID_TXN_ID
            if txn.state is TransactionState.ABORTED:
                if request in queue.requests:
                    queue.requests.remove(request)
                self._forget(txn, request)
                queue.cond.notify_all()
                return False
            self._remember(txn, request)
            return True

    @staticmethod
    def _held_request(queue: Optional[_RequestQueue], txn_id: int) -> Optional[_LockRequest]:
        if queue is None:
            return None
        with queue.cond:
            return queue.granted_of(txn_id)

    @staticmethod
    def _discard(queue: _RequestQueue, txn_id: int) -> bool:
        with queue.cond:
            held = queue.granted_of(txn_id)
            if held is None:
                return False
            queue.requests.remove(held)
            queue.cond.notify_all()
            return True

    @staticmethod
    def _shrink_after_unlock(txn: Transaction, lock_mode: LockMode) -> None:
        level = txn.isolation_level
        shrinks = (
            level is IsolationLevel.REPEATABLE_READ
            and lock_mode in (LockMode.SHARED, LockMode.EXCLUSIVE)
        ) or (
            level in (IsolationLevel.READ_COMMITTED, IsolationLevel.READ_UNCOMMITTED)
            and lock_mode is LockMode.EXCLUSIVE
        )
        if shrinks and txn.state is TransactionState.GROWING:
            txn.state = TransactionState.SHRINKING

    # -- table locks -------------------------------------------------------

    def lock_table(self, txn: Transaction, lock_mode: LockMode, oid: int) -> bool:
        """Block until ``oid`` is locked in ``lock_mode``; False if the txn is aborted."""
        if txn.state is TransactionState.ABORTED:
            return False
        level = txn.isolation_level
        shrinking = txn.state is TransactionState.SHRINKING
        if level is IsolationLevel.READ_UNCOMMITTED and lock_mode in _SHARED_TABLE_MODES:
            raise self._abort(txn, AbortReason.LOCK_SHARED_ON_READ_UNCOMMITTED)
        if shrinking and (
            level in (IsolationLevel.READ_UNCOMMITTED, IsolationLevel.REPEATABLE_READ)
            or lock_mode not in (LockMode.SHARED, LockMode.INTENTION_SHARED)
        ):
            raise self._abort(txn, AbortReason.LOCK_ON_SHRINKING)
        queue = self._queue(self._table_queues, oid, txn)
        return self._acquire(queue, _LockRequest(txn, lock_mode, oid))

    def unlock_table(self, txn: Transaction, oid: int) -> bool:
        """Release the table lock ``txn`` holds on ``oid``."""
        queue = self._existing_queue(self._table_queues, oid)
        held = self._held_request(queue, txn.txn_id)
        if queue is None or held is None:
            raise self._abort(txn, AbortReason.ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD)
        self._shrink_after_unlock(txn, held.lock_mode)
        if txn.row_lock_set(LockMode.SHARED).get(oid) or txn.row_lock_set(
            LockMode.EXCLUSIVE
        ).get(oid):
            raise self._abort(txn, AbortReason.TABLE_UNLOCKED_BEFORE_UNLOCKING_ROWS)
        if not self._discard(queue, txn.txn_id):
            raise self._abort(txn, AbortReason.ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD)
        self._forget(txn, held)
        return True

    # -- row locks ---------------------------------------------------------

    def lock_row(self, txn: Transaction, lock_mode: LockMode, oid: int, rid: RID) -> bool:
        """Block until row ``rid`` of table ``oid`` is locked; False if aborted."""
        if txn.state is TransactionState.ABORTED:
            return False
        if lock_mode in _INTENTION_MODES:
            raise self._abort(txn, AbortReason.ATTEMPTED_INTENTION_LOCK_ON_ROW)
        level = txn.isolation_level
        shrinking = txn.state is TransactionState.SHRINKING
        if level is IsolationLevel.READ_UNCOMMITTED and lock_mode is LockMode.SHARED:
            raise self._abort(txn, AbortReason.LOCK_SHARED_ON_READ_UNCOMMITTED)
        if shrinking and (
            level in (IsolationLevel.READ_UNCOMMITTED, IsolationLevel.REPEATABLE_READ)
            or lock_mode is not LockMode.SHARED
        ):
            raise self._abort(txn, AbortReason.LOCK_ON_SHRINKING)
        if lock_mode is LockMode.SHARED:
            parents = LockMode
        else:
            parents = _ROW_EXCLUSIVE_PARENTS
        if not any(txn.holds_table_lock(oid, mode) for mode in parents):
            raise self._abort(txn, AbortReason.TABLE_LOCK_NOT_PRESENT)
        queue = self._queue(self._row_queues, rid, txn)
        return self._acquire(queue, _LockRequest(txn, lock_mode, oid, rid))

    def unlock_row(
        self, txn: Transaction, oid: int, rid: RID, force: bool = False
    ) -> bool:
        """Release the lock ``txn`` holds on row ``rid``; ``force`` skips shrinking."""
        queue = self._existing_queue(self._row_queues, rid)
        held = self._held_request(queue, txn.txn_id)
        if queue is None or held is None or held.oid != oid:
            raise self._abort(txn, AbortReason.ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD)
        if not force:
            self._shrink_after_unlock(txn, held.lock_mode)
        if not self._discard(queue, txn.txn_id):
            raise self._abort(txn, AbortReason.ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD)
        self._forget(txn, held)
        return True

    # -- deadlock detection ------------------------------------------------

    def add_edge(self, t1: int, t2: int) -> None:
        """Record that ``t1`` waits for ``t2``."""
        self._waits_for.add_edge(t1, t2)

    def remove_edge(self, t1: int, t2: int) -> None:
        """Forget that ``t1`` waits for ``t2``."""
        self._waits_for.remove_edge(t1, t2)

    def has_cycle(self) -> Optional[int]:
        """Youngest transaction id on a waits-for cycle, or None."""
        return self._waits_for.has_cycle()

    def get_edge_list(self) -> List[Tuple[int, int]]:
        """All waits-for edges as (waiter, holder) pairs."""
        return self._waits_for.edge_list()

    def _release_all(self, txn: Transaction) -> None:
        for queue in self._all_queues():
            with queue.cond:
                queue.requests = [
                    r
                    for r in queue.requests
                    if not (r.granted and r.txn.txn_id == txn.txn_id)
                ]
                if queue.upgrading == txn.txn_id:
                    queue.upgrading = INVALID_TXN_ID
                queue.cond.notify_all()
        for mode in LockMode:
            txn.table_lock_set(mode).clear()
        for mode in (LockMode.SHARED, LockMode.EXCLUSIVE):
            txn.row_lock_set(mode).clear()

    def detect_deadlocks(self) -> Optional[int]:
        """Rebuild the waits-for graph and abort the youngest txn on a cycle.

        Returns the id of the aborted transaction, or None if there is no cycle.
        """
        self._waits_for.clear()
        for queue in self._all_queues():
            with queue.cond:
                holders = {r.txn.txn_id: r.txn for r in queue.requests if r.granted}
                waiters = {r.txn.txn_id: r.txn for r in queue.requests if not r.granted}
            for waiter in waiters.values():
                for holder in holders.values():
                    if (
                        waiter.txn_id != holder.txn_id
                        and waiter.state is not TransactionState.ABORTED
                        and holder.state is not TransactionState.ABORTED
                    ):
                        self._waits_for.add_edge(waiter.txn_id, holder.txn_id)
        victim_id = self._waits_for.has_cycle()
        if victim_id is None:
            return None
        with self._map_lock:
            victim = self._transactions[victim_id]
        victim.state = TransactionState.ABORTED
        if self.txn_manager is not None:
            self.txn_manager.abort(victim)
        else:
            self._release_all(victim)
        for queue in self._all_queues():
            with queue.cond:
                queue.cond.notify_all()
        return victim_id

    def run_cycle_detection(self) -> None:
        """Detect deadlocks every interval until stop_cycle_detection is called."""
        while not self._stop.wait(self.cycle_detection_interval):
            self.detect_deadlocks()

    def stop_cycle_detection(self) -> None:
        """Make run_cycle_detection return."""
        self._stop.set()