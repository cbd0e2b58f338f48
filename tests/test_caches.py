"""Tests for the provider model cache and the per-connection request cache."""

from __future__ import annotations

from model_reconciler.models.cache import ProviderModelCache, build_cache_key
from model_reconciler.models.request_cache import RequestCache


def _key(channel_id: int = 1, token: str = "sk-secret") -> str:
    return build_cache_key(
        base_url="https://provider.test/",
        user_id=1,
        auth_header_type="NEW-API",
        channel_id=channel_id,
        token=token,
    )


class TestBuildCacheKey:
    def test_token_never_appears_in_key(self) -> None:
        key = _key(token="sk-secret")
        assert "sk-secret" not in key
        assert key.startswith("https://provider.test|1|NEW-API|1|")

    def test_distinct_tokens_produce_distinct_keys(self) -> None:
        assert _key(token="a") != _key(token="b")
        assert _key(channel_id=1) != _key(channel_id=2)

    def test_anonymous_token(self) -> None:
        assert _key(token="").endswith("|anonymous")


class TestProviderModelCache:
    def test_stores_normalized_copy(self) -> None:
        cache = ProviderModelCache(ttl_seconds=60)
        assert cache.set(_key(), [" gpt-4o ", "gpt-4o", "", "claude-3-opus"])
        first = cache.get(_key())
        assert first == ["gpt-4o", "claude-3-opus"]
        first.append("mutated")
        assert cache.get(_key()) == ["gpt-4o", "claude-3-opus"]

    def test_refuses_empty_lists(self) -> None:
        cache = ProviderModelCache(ttl_seconds=60)
        cache.set(_key(), ["gpt-4o"])
        assert cache.set(_key(), []) is False
        assert cache.set(_key(), "   ") is False
        assert cache.get(_key()) == ["gpt-4o"]

    def test_zero_ttl_expires_immediately(self) -> None:
        cache = ProviderModelCache(ttl_seconds=0)
        cache.set(_key(), ["gpt-4o"])
        assert cache.get(_key()) is None
        assert cache.stats()["misses"] == 1

    def test_evicts_oldest_beyond_capacity(self) -> None:
        cache = ProviderModelCache(ttl_seconds=60, max_entries=2)
        for channel_id in (1, 2, 3):
            cache.set(_key(channel_id), ["gpt-4o"])
        assert len(cache) == 2
        assert cache.get(_key(1)) is None
        assert cache.get(_key(3)) == ["gpt-4o"]

    def test_invalidate_and_clear(self) -> None:
        cache = ProviderModelCache(ttl_seconds=60)
        cache.set(_key(1), ["a"])
        cache.set(_key(2), ["b"])
        cache.invalidate(_key(1))
        assert cache.get(_key(1)) is None
        cache.clear()
        assert len(cache) == 0

    def test_sweep_counts_expired(self) -> None:
        cache = ProviderModelCache(ttl_seconds=0)
        cache.set(_key(1), ["a"])
        cache.set(_key(2), ["b"])
        assert cache.sweep() == 2

    def test_from_valves(self, valves) -> None:
        cache = ProviderModelCache.from_valves(valves.model_copy(update={"MODEL_CACHE_MAX_ENTRIES": 7}))
        assert cache.max_entries == 7
        assert cache.ttl_seconds == valves.MODEL_CACHE_TTL_SECONDS


class TestRequestCache:
    def test_returns_deep_copies(self) -> None:
        cache = RequestCache(ttl_seconds=60)
        cache.set("GET /api/models", {"data": ["gpt-4o"]})
        value = cache.get("GET /api/models")
        value["data"].append("mutated")
        assert cache.get("GET /api/models") == {"data": ["gpt-4o"]}

    def test_zero_ttl_disables_cache(self) -> None:
        cache = RequestCache(ttl_seconds=0)
        cache.set("k", 1)
        assert "k" not in cache
        assert cache.get("k") is None

    def test_evicts_least_used_fifth(self) -> None:
        cache = RequestCache(ttl_seconds=60, max_entries=5)
        for index in range(5):
            cache.set(f"k{index}", index)
        for index in range(4):
            cache.get(f"k{index}")
        cache.set("k5", 5)
        assert len(cache) == 4
        assert all(f"k{index}" in cache for index in range(4))
        assert "k4" not in cache

    def test_invalidate_by_prefix(self) -> None:
        cache = RequestCache(ttl_seconds=60)
        cache.set("GET /api/channel/1", 1)
        cache.set("GET /api/channel/2", 2)
        cache.set("GET /api/models", 3)
        cache.invalidate("GET /api/channel/")
        assert "GET /api/channel/1" not in cache
        assert "GET /api/models" in cache
        cache.invalidate()
        assert len(cache) == 0
