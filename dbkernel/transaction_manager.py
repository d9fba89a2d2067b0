"""Starts transactions and ends them by commit or abort, releasing their locks."""

from __future__ import annotations

import itertools
import threading
from contextlib import suppress
from typing import Dict

from dbkernel.lock_manager import LockManager
from dbkernel.transaction import (
    IsolationLevel,
    LockMode,
    Transaction,
    TransactionAbortError,
    TransactionState,
)


class TransactionManager:
    """Hands out transactions and releases every lock they hold when they end."""

    def __init__(self, lock_manager: LockManager) -> None:
        self.lock_manager = lock_manager
        lock_manager.txn_manager = self
        self._ids = itertools.count()
        self._transactions: Dict[int, Transaction] = {}
        self._lock = threading.Lock()

    def begin(
        self, isolation_level: IsolationLevel = IsolationLevel.REPEATABLE_READ
    ) -> Transaction:
        """Start a new transaction in the growing phase."""
        with self._lock:
            txn = Transaction(next(self._ids), isolation_level)
            self._transactions[txn.txn_id] = txn
            return txn

    def get_transaction(self, txn_id: int) -> Transaction:
        """Return the transaction with ``txn_id``; KeyError if it was never begun."""
        with self._lock:
            try:
                return self._transactions[txn_id]
            except KeyError:
                raise KeyError(f"unknown transaction {txn_id}") from None

    def _release_locks(self, txn: Transaction) -> None:
        # Rows go first: a table cannot be unlocked while its rows are held.
        for mode in (LockMode.SHARED, LockMode.EXCLUSIVE):
            held_rows = [
                (oid, rid)
                for oid, rids in txn.row_lock_set(mode).items()
                for rid in rids
            ]
            for oid, rid in held_rows:
                with suppress(TransactionAbortError):
                    self.lock_manager.unlock_row(txn, oid, rid, force=True)
        for mode in LockMode:
            for oid in list(txn.table_lock_set(mode)):
                with suppress(TransactionAbortError):
                    self.lock_manager.unlock_table(txn, oid)

    def commit(self, txn: Transaction) -> None:
        """Release all locks of ``txn`` and mark it committed."""
        self._release_locks(txn)
        txn.state = TransactionState.COMMITTED

    def abort(self, txn: Transaction) -> None:
        """Release all locks of ``txn`` and mark it aborted."""
        txn.state = TransactionState.ABORTED
        self._release_locks(txn)
        txn.state = TransactionState.ABORTED