"""Process-local cache of execution trackers.

The cache is advisory only. A hit lets the coordinator refuse a call
without touching Redis; a miss never proves anything and always falls
through to the lease. One instance is meant to be constructed per process
and shared by every coordinator and thread in it.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from keyfence.coordination.tracker import ExecutionTracker

DEFAULT_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class LocalEntry:
    """Cached knowledge about one key.

    ``tracker`` is None for an in-flight marker: the operation is running
    in this process right now.
    """

    tracker: ExecutionTracker | None
    expires_at: float


class LocalTrackerCache:
    """Thread-safe TTL map from logical keys to ``LocalEntry``.

    Args:
        clock: Wall-clock source in epoch seconds
        max_entries: Size above which expired entries are swept on write
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, LocalEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> LocalEntry | None:
        """Live entry for ``key``, dropping it if expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry

    def set_tracker(self, key: str, tracker: ExecutionTracker, ttl: float) -> None:
        """Remember ``tracker`` until ``ttl`` seconds after it was recorded."""
        self._put(key, LocalEntry(tracker=tracker, expires_at=tracker.timestamp + ttl))

    def mark_in_flight(self, key: str, ttl: float) -> None:
        """Flag ``key`` as running here for at most ``ttl`` seconds."""
        self._put(key, LocalEntry(tracker=None, expires_at=self._clock() + ttl))

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _put(self, key: str, entry: LocalEntry) -> None:
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self._max_entries:
                expired = [k for k, e in self._entries.items() if e.expires_at <= now]
                for k in expired:
                    del self._entries[k]
            self._entries[key] = entry
