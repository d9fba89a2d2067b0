# dbkernel

In-memory building blocks of a relational database engine:

- `dbkernel.replacer`: `LRUKReplacer`, an LRU-K frame replacement policy, with
  `AccessType` and `ReplacerError`.
- `dbkernel.transaction`: `Transaction`, `TransactionState`, `IsolationLevel`,
  `LockMode`, `RID`, `AbortReason` and `TransactionAbortError`.
- `dbkernel.lock_manager`: `LockManager`, hierarchical two-phase locking on
  tables and rows with lock upgrades and deadlock detection, plus the helpers
  `are_locks_compatible` and `can_lock_upgrade`.
- `dbkernel.waits_for`: `WaitsForGraph`, the waits-for graph used to find
  deadlock cycles.
- `dbkernel.transaction_manager`: `TransactionManager`, which begins, commits
  and aborts transactions and releases their locks.
- `dbkernel.aggregation`: `SimpleAggregationHashTable` and `AggregationType`
  for grouped `COUNT(*)`, `COUNT`, `SUM`, `MIN` and `MAX`.

The package has no runtime dependencies.

## Installation

```
pip install .
```

## LRU-K replacement

```python
from dbkernel.replacer import LRUKReplacer

replacer = LRUKReplacer(num_frames=7, k=2)
replacer.record_access(1)
replacer.record_access(2)
replacer.record_access(2)
replacer.set_evictable(1, True)
replacer.set_evictable(2, True)

assert replacer.size() == 2
assert replacer.evict() == 1   # fewer than k accesses: infinite k-distance
assert replacer.evict() == 2
assert replacer.evict() is None
```

Only frames marked evictable are candidates. Frames with fewer than `k`
recorded accesses go first, earliest access first; among the others, the frame
whose k-th most recent access is oldest goes first. A frame id above
`num_frames`, or tracking more than `num_frames` frames, raises `ReplacerError`,
as does `remove` on a tracked frame that is not evictable.

## Locking

```python
from dbkernel.lock_manager import LockManager
from dbkernel.transaction import IsolationLevel, LockMode, RID
from dbkernel.transaction_manager import TransactionManager

locks = LockManager()
txns = TransactionManager(locks)

txn = txns.begin(IsolationLevel.REPEATABLE_READ)
locks.lock_table(txn, LockMode.INTENTION_EXCLUSIVE, 1)
locks.lock_row(txn, LockMode.EXCLUSIVE, 1, RID(0, 3))
txns.commit(txn)
```

`lock_table` and `lock_row` block until the lock is granted and return `False`
if the transaction is aborted meanwhile. Requests that break the protocol (a
shared lock under `READ_UNCOMMITTED`, a new lock while shrinking, an intention
lock on a row, a row lock without a suitable table lock, an incompatible or
conflicting upgrade, unlocking a table before its rows, unlocking something not
held) mark the transaction aborted and raise `TransactionAbortError`, whose
`reason` is an `AbortReason`.

Deadlocks are found by `LockManager.detect_deadlocks()`, which rebuilds the
waits-for graph, aborts the youngest transaction on a cycle and returns its id
(or `None`). To check continuously, run `LockManager.run_cycle_detection()` in a
background thread and end it with `stop_cycle_detection()`.

## Aggregation

```python
from dbkernel.aggregation import AggregationType, SimpleAggregationHashTable

table = SimpleAggregationHashTable([AggregationType.COUNT_STAR, AggregationType.SUM])
table.insert_combine(("a",), [None, 5])
table.insert_combine(("a",), [None, 7])
table.insert_combine(("b",), [None, None])

assert dict(table.items()) == {("a",): [2, 12], ("b",): [1, None]}
```

`None` stands for SQL NULL. `COUNT(*)` starts at 0. The other aggregates start
at NULL and skip NULL inputs.

## What this package does not do

There is no page storage, disk I/O or page cache here. `LRUKReplacer` only
chooses which frame to give up; nothing in the package holds page contents.
There is no SQL parser, planner or executor; the aggregation table is a
standalone data structure. Aborting a transaction releases its locks and marks
it aborted, but there are no table writes to roll back.

## Running the tests

```
pip install .[test]
pytest
```