"""Provider model cache.

Holds each channel's authoritative upstream model list for a short TTL so a
batch run does not re-fetch the same channel repeatedly. Keys combine the
connection endpoint, account, header type and channel id with a hash of the
access token; the token itself never appears in a key.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from ..core.config import Valves
from ..core.utils import _dedupe_names, hash_token

LOGGER = logging.getLogger(__name__)


def build_cache_key(
    *,
    base_url: str,
    user_id: Any,
    auth_header_type: str,
    channel_id: Any,
    token: Optional[str],
) -> str:
    return "|".join(
        [
            (base_url or "").strip().rstrip("/"),
            str(user_id or ""),
            auth_header_type or "",
            str(channel_id),
            hash_token(token),
        ]
    )


@dataclass(slots=True)
class _CacheEntry:
    models: list[str]
    stored_at: float
    expires_at: float


class ProviderModelCache:
    """TTL-bounded store of upstream model lists keyed by connection and channel."""

    def __init__(self, *, ttl_seconds: float = 300.0, max_entries: int = 500) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_valves(cls, valves: Valves) -> "ProviderModelCache":
        return cls(ttl_seconds=valves.MODEL_CACHE_TTL_SECONDS, max_entries=valves.MODEL_CACHE_MAX_ENTRIES)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[list[str]]:
        """Return a copy of the cached list, evicting it if expired."""
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return list(entry.models)

    def set(self, key: str, models: Any) -> bool:
        """Store a normalized list; empty lists are refused so a bad fetch never masks a good one."""
        if isinstance(models, str) or models is None:
            normalized = _dedupe_names([models] if models else [])
        else:
            normalized = _dedupe_names(models)
        if not normalized:
            LOGGER.debug("Refusing to cache an empty model list for %s", key.rsplit("|", 1)[0])
            return False
        now = time.time()
        with self._lock:
            self._entries[key] = _CacheEntry(normalized, now, now + self.ttl_seconds)
            self._prune_locked(now)
        return True

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = time.time()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)

    def _prune_locked(self, now: float) -> None:
        if len(self._entries) <= self.max_entries:
            return
        for key in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            self._entries.pop(key, None)
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._entries.items(), key=lambda item: item[1].stored_at)[:overflow]
        for key, _entry in oldest:
            self._entries.pop(key, None)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }
