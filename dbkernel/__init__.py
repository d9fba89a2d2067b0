"""LRU-K replacement, two-phase locking, deadlock detection and aggregation primitives for a database engine."""

__version__ = "0.1.0"