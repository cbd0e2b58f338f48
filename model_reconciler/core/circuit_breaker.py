"""Circuit breaker for provider connection failures.

This module provides two layers of protection:
- Instance-level: connectivity failures per connection scope within a sliding window
- Class-level: authentication failures shared by every client for the same scope

Once a threshold is exceeded further calls fail fast instead of hammering an
unreachable or misconfigured provider during a batch run.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class CircuitBreaker:
    """Sliding-window failure counter keyed by connection scope."""

    # Class-level auth failure tracking (shared across all clients)
    _AUTH_FAILURE_TTL_SECONDS = 60
    _AUTH_FAILURE_UNTIL: dict[str, float] = {}
    _AUTH_FAILURE_LOCK = threading.Lock()

    def __init__(self, *, threshold: int, window_seconds: float):
        self._threshold = max(1, int(threshold))
        self._window_seconds = window_seconds
        self._lock = threading.Lock()
        self._records: dict[str, deque[float]] = defaultdict(self._new_record)

    def _new_record(self) -> deque[float]:
        return deque(maxlen=self._threshold)

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def allows(self, scope_key: str) -> bool:
        """Return True when the scope has fewer than ``threshold`` recent failures."""
        if not scope_key:
            return True
        with self._lock:
            window = self._records.get(scope_key)
            if not window:
                return True
            cutoff = time.time() - self._window_seconds
            while window and window[0] < cutoff:
                window.popleft()
            return len(window) < self._threshold

    def record_failure(self, scope_key: str) -> None:
        if not scope_key:
            return
        with self._lock:
            self._records[scope_key].append(time.time())

    def reset(self, scope_key: str) -> None:
        with self._lock:
            self._records.pop(scope_key, None)

    # -- auth fail-fast ---------------------------------------------------

    @classmethod
    def note_auth_failure(cls, scope_key: str, *, ttl_seconds: float | None = None) -> None:
        """Remember an auth failure so later calls for the scope fail fast."""
        if not scope_key:
            return
        ttl = cls._AUTH_FAILURE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        with cls._AUTH_FAILURE_LOCK:
            cls._AUTH_FAILURE_UNTIL[scope_key] = time.time() + ttl

    @classmethod
    def auth_failure_active(cls, scope_key: str) -> bool:
        if not scope_key:
            return False
        with cls._AUTH_FAILURE_LOCK:
            until = cls._AUTH_FAILURE_UNTIL.get(scope_key)
            if until is None:
                return False
            if until <= time.time():
                cls._AUTH_FAILURE_UNTIL.pop(scope_key, None)
                return False
            return True

    @classmethod
    def clear_auth_failure(cls, scope_key: str) -> None:
        with cls._AUTH_FAILURE_LOCK:
            cls._AUTH_FAILURE_UNTIL.pop(scope_key, None)
