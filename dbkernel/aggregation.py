"""Hash table that groups rows and folds them into COUNT, SUM, MIN and MAX values."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Hashable, Iterator, List, Sequence, Tuple


class AggregationType(Enum):
    """Aggregate functions the hash table can compute."""

    COUNT_STAR = "count_star"
    COUNT = "count"
    SUM = "sum"
    MIN = "min"
    MAX = "max"


class SimpleAggregationHashTable:
    """Maps group-by keys to running aggregate values; None stands for SQL NULL."""

    def __init__(self, agg_types: Sequence[AggregationType]) -> None:
        self.agg_types: Tuple[AggregationType, ...] = tuple(agg_types)
        self._table: Dict[Tuple[Hashable, ...], List[Any]] = {}

    def initial_value(self) -> List[Any]:
        """Starting aggregates: 0 for COUNT(*), NULL for everything else."""
        return [
            0 if agg_type is AggregationType.COUNT_STAR else None
            for agg_type in self.agg_types
        ]

    def combine(self, result: Sequence[Any], values: Sequence[Any]) -> List[Any]:
        """Fold one row's input ``values`` into ``result`` and return the new aggregates."""
        if len(result) != len(self.agg_types) or len(values) != len(self.agg_types):
            raise ValueError(
                f"expected {len(self.agg_types)} aggregate values, "
                f"got {len(result)} and {len(values)}"
            )
        return [
            self._fold(agg_type, current, value)
            for agg_type, current, value in zip(self.agg_types, result, values)
        ]

    @staticmethod
    def _fold(agg_type: AggregationType, current: Any, value: Any) -> Any:
        if agg_type is AggregationType.COUNT_STAR:
            return current + 1
        if agg_type is AggregationType.COUNT:
            if value is None:
                return current
            return 1 if current is None else current + 1
        if current is None:
            return value
        if value is None:
            return current
        if agg_type is AggregationType.SUM:
            return current + value
        if agg_type is AggregationType.MIN:
            return min(current, value)
        return max(current, value)

    def insert_combine(self, key: Sequence[Hashable], values: Sequence[Any]) -> None:
        """Fold ``values`` into the group for ``key``, creating the group if new."""
        group = tuple(key)
        current = self._table.get(group)
        if current is None:
            current = self.initial_value()
        self._table[group] = self.combine(current, values)

    def clear(self) -> None:
        """Remove every group."""
        self._table.clear()

    def items(self) -> Iterator[Tuple[Tuple[Hashable, ...], List[Any]]]:
        """Yield (key, aggregates) pairs for every group."""
        for key, aggregates in self._table.items():
            yield key, list(aggregates)

    def __iter__(self) -> Iterator[Tuple[Hashable, ...]]:
        return iter(list(self._table))

    def __len__(self) -> int:
        return len(self._table)