"""Waits-for graph between transactions, used to find deadlocks."""

from __future__ import annotations

import threading
from typing import Dict, Iterator, List, Optional, Tuple

_DONE = object()


class WaitsForGraph:
    """Directed graph where an edge t1 -> t2 means t1 waits for a lock t2 holds."""

    def __init__(self) -> None:
        self._edges: Dict[int, List[int]] = {}
        self._lock = threading.Lock()

    def add_edge(self, t1: int, t2: int) -> None:
        """Add the edge t1 -> t2 unless it is already present."""
        with self._lock:
            targets = self._edges.setdefault(t1, [])
            if t2 not in targets:
                targets.append(t2)

    def remove_edge(self, t1: int, t2: int) -> None:
        """Remove the edge t1 -> t2 if it is present."""
        with self._lock:
            targets = self._edges.get(t1)
            if targets is None or t2 not in targets:
                return
            targets.remove(t2)
            if not targets:
                del self._edges[t1]

    def clear(self) -> None:
        """Remove every edge."""
        with self._lock:
            self._edges.clear()

    def has_cycle(self) -> Optional[int]:
        """Return the youngest (largest) transaction id on a cycle, or None.

        The search starts from the lowest transaction id and follows edges in
        the order they were added, so the cycle found is deterministic.
        """
        with self._lock:
            adjacency = {t: list(targets) for t, targets in self._edges.items()}
        cycle = self._find_cycle(adjacency)
        if cycle is None:
            return None
        return max(cycle)

    @staticmethod
    def _find_cycle(adjacency: Dict[int, List[int]]) -> Optional[List[int]]:
        visited = set()
        for start in sorted(adjacency):
            if start in visited:
                continue
            visited.add(start)
            path = [start]
            on_path = {start}
            pending: List[Iterator[int]] = [iter(adjacency.get(start, ()))]
            while pending:
                child = next(pending[-1], _DONE)
                if child is _DONE:
                    pending.pop()
                    on_path.discard(path.pop())
                    continue
                if child in on_path:
                    return path[path.index(child):]
                if child in visited:
                    continue
                visited.add(child)
                path.append(child)
                on_path.add(child)
                pending.append(iter(adjacency.get(child, ())))
        return None

    def edge_list(self) -> List[Tuple[int, int]]:
        """All edges as (waiter, holder) pairs."""
        with self._lock:
            return [(t1, t2) for t1, targets in self._edges.items() for t2 in targets]