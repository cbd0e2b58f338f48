"""Per-connection request cache for idempotent GET responses."""

from __future__ import annotations

import copy
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(slots=True)
class _RequestEntry:
    value: Any
    expires_at: float
    last_access: float
    access_count: int = 0


class RequestCache:
    """TTL cache that evicts its least-used fifth once over capacity.

    Eviction ranks entries by ``(access_count, last_access)`` so rarely read,
    stale responses go first. One instance belongs to one client; entries are
    never shared across connections.
    """

    EVICTION_FRACTION = 0.2

    def __init__(self, *, ttl_seconds: float = 300.0, max_entries: int = 100) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._entries: dict[str, _RequestEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > time.time()

    def get(self, key: str) -> Optional[Any]:
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                if entry is not None:
                    self._entries.pop(key, None)
                self.misses += 1
                return None
            entry.access_count += 1
            entry.last_access = now
            self.hits += 1
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        now = time.time()
        with self._lock:
            self._entries[key] = _RequestEntry(copy.deepcopy(value), now + self.ttl_seconds, now)
            if len(self._entries) > self.max_entries:
                self._evict_locked(now)

    def invalidate(self, prefix: str = "") -> None:
        """Drop every entry whose key starts with ``prefix`` (all entries when empty)."""
        with self._lock:
            if not prefix:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key.startswith(prefix)]:
                self._entries.pop(key, None)

    def _evict_locked(self, now: float) -> None:
        for key in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            self._entries.pop(key, None)
        if len(self._entries) <= self.max_entries:
            return
        count = max(1, math.ceil(len(self._entries) * self.EVICTION_FRACTION))
        ranked = sorted(self._entries.items(), key=lambda item: (item[1].access_count, item[1].last_access))
        for key, _entry in ranked[:count]:
            self._entries.pop(key, None)
