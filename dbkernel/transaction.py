"""Transactions, lock modes and the errors raised when a transaction must abort."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Set

INVALID_TXN_ID = -1


class TransactionState(Enum):
    """Phase of a transaction under two-phase locking."""

    GROWING = "growing"
    SHRINKING = "shrinking"
    COMMITTED = "committed"
    ABORTED = "aborted"


class IsolationLevel(Enum):
    """Isolation level a transaction runs under."""

    READ_UNCOMMITTED = "read_uncommitted"
    REPEATABLE_READ = "repeatable_read"
    READ_COMMITTED = "read_committed"


class LockMode(Enum):
    """Modes in which a table or row may be locked."""

    SHARED = "S"
    EXCLUSIVE = "X"
    INTENTION_SHARED = "IS"
    INTENTION_EXCLUSIVE = "IX"
    SHARED_INTENTION_EXCLUSIVE = "SIX"


ROW_LOCK_MODES = frozenset({LockMode.SHARED, LockMode.EXCLUSIVE})


class AbortReason(Enum):
    """Why a lock request forced its transaction to abort."""

    LOCK_ON_SHRINKING = "lock on shrinking"
    UPGRADE_CONFLICT = "upgrade conflict"
    LOCK_SHARED_ON_READ_UNCOMMITTED = "lock shared on read uncommitted"
    TABLE_LOCK_NOT_PRESENT = "table lock not present"
    ATTEMPTED_INTENTION_LOCK_ON_ROW = "attempted intention lock on row"
    TABLE_UNLOCKED_BEFORE_UNLOCKING_ROWS = "table unlocked before unlocking rows"
    INCOMPATIBLE_UPGRADE = "incompatible upgrade"
    ATTEMPTED_UNLOCK_BUT_NO_LOCK_HELD = "attempted unlock but no lock held"


class TransactionAbortError(Exception):
    """Raised when a transaction has been aborted by the lock manager."""

    def __init__(self, txn_id: int, reason: AbortReason) -> None:
        super().__init__(f"transaction {txn_id} aborted: {reason.value}")
        self.txn_id = txn_id
        self.reason = reason


@dataclass(frozen=True, order=True)
class RID:
    """Record identifier: the page holding a tuple and its slot on that page."""

    page_id: int
    slot_num: int


@dataclass(eq=False)
class Transaction:
    """A transaction and the table and row locks it currently holds."""

    txn_id: int
    isolation_level: IsolationLevel = IsolationLevel.REPEATABLE_READ
    state: TransactionState = TransactionState.GROWING
    _table_locks: Dict[LockMode, Set[int]] = field(
        default_factory=lambda: {mode: set() for mode in LockMode}, repr=False
    )
    _row_locks: Dict[LockMode, Dict[int, Set[RID]]] = field(
        default_factory=lambda: {mode: {} for mode in ROW_LOCK_MODES}, repr=False
    )

    def table_lock_set(self, lock_mode: LockMode) -> Set[int]:
        """Table oids held in ``lock_mode``; the set is live and may be changed."""
        return self._table_locks[lock_mode]

    def row_lock_set(self, lock_mode: LockMode) -> Dict[int, Set[RID]]:
        """Rows held in ``lock_mode``, keyed by table oid; live and mutable.

        Only shared and exclusive modes apply to rows.
        """
        if lock_mode not in ROW_LOCK_MODES:
            raise ValueError(f"rows cannot be locked in mode {lock_mode.value}")
        return self._row_locks[lock_mode]

    def holds_table_lock(self, oid: int, lock_mode: LockMode) -> bool:
        """Whether table ``oid`` is held in exactly ``lock_mode``."""
        return oid in self._table_locks[lock_mode]