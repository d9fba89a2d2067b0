"""LRU-K frame replacement policy for the buffer pool."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Optional, Tuple


class AccessType(Enum):
    """Kind of page access; recorded for interface compatibility only."""

    UNKNOWN = 0
    GET = 1
    SCAN = 2


class ReplacerError(Exception):
    """Raised when the replacer is used with an invalid frame or state."""


@dataclass
class _FrameHistory:
    k: int
    history: Deque[int] = field(default_factory=deque)
    evictable: bool = False

    def add(self, timestamp: int) -> None:
        if len(self.history) == self.k:
            self.history.popleft()
        self.history.append(timestamp)

    def eviction_key(self) -> Tuple[int, int]:
        # Frames with fewer than k accesses have infinite backward k-distance
        # and go first, oldest first access first. Among the rest, the frame
        # whose k-th most recent access is oldest has the largest distance.
        has_full_history = 1 if len(self.history) == self.k else 0
        return has_full_history, self.history[0]


class LRUKReplacer:
    """Evicts the evictable frame with the largest backward k-distance."""

    def __init__(self, num_frames: int, k: int) -> None:
        if k <= 0:
            raise ValueError("k must be positive")
        self._num_frames = num_frames
        self._k = k
        self._timestamp = 0
        self._frames: Dict[int, _FrameHistory] = {}
        self._lock = threading.Lock()

    def _check_frame(self, frame_id: int) -> None:
        if frame_id < 0 or frame_id > self._num_frames:
            raise ReplacerError(f"invalid frame id {frame_id}")

    def evict(self) -> Optional[int]:
        """Evict a frame and return its id, or None if nothing is evictable."""
        with self._lock:
            candidates = [
                (node.eviction_key(), frame_id)
                for frame_id, node in self._frames.items()
                if node.evictable
            ]
            if not candidates:
                return None
            _, victim = min(candidates)
            del self._frames[victim]
            return victim

    def record_access(
        self, frame_id: int, access_type: AccessType = AccessType.UNKNOWN
    ) -> None:
        """Record an access to ``frame_id`` at the current timestamp."""
        with self._lock:
            self._check_frame(frame_id)
            self._timestamp += 1
            node = self._frames.get(frame_id)
            if node is None:
                if len(self._frames) >= self._num_frames:
                    raise ReplacerError("record access exceeds replacer size")
                node = _FrameHistory(self._k)
                self._frames[frame_id] = node
            node.add(self._timestamp)

    def set_evictable(self, frame_id: int, set_evictable: bool) -> None:
        """Mark a tracked frame as evictable or pinned; unknown frames are ignored."""
        with self._lock:
            self._check_frame(frame_id)
            node = self._frames.get(frame_id)
            if node is not None:
                node.evictable = set_evictable

    def remove(self, frame_id: int) -> None:
        """Drop a frame and its history; it must be evictable if tracked."""
        with self._lock:
            node = self._frames.get(frame_id)
            if node is None:
                return
            if not node.evictable:
                raise ReplacerError("cannot remove a non-evictable frame")
            del self._frames[frame_id]

    def size(self) -> int:
        """Number of evictable frames."""
        with self._lock:
            return sum(1 for node in self._frames.values() if node.evictable)