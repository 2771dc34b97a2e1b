"""Unit tests for cache/store.py -- TTL, eviction and invalidation of cached metadata."""

from __future__ import annotations

from unittest.mock import patch

from cache.store import MetadataCache
from conftest import make_settings

NS = "JwkSet"


class TestMetadataCache:
    def test_miss(self, cache) -> None:
        assert cache.get(NS, "OIDC_JWK_SET") is None

    def test_put_and_get(self, cache) -> None:
        cache.put(NS, "OIDC_JWK_SET", {"keys": [{"kid": "k1"}]})
        assert cache.get(NS, "OIDC_JWK_SET") == {"keys": [{"kid": "k1"}]}

    def test_namespaces_are_separate(self, cache) -> None:
        cache.put("A", "k", 1)
        cache.put("B", "k", 2)
        assert (cache.get("A", "k"), cache.get("B", "k")) == (1, 2)

    def test_put_replaces(self, cache) -> None:
        cache.put(NS, "k", "old")
        cache.put(NS, "k", "new")
        assert cache.get(NS, "k") == "new"

    def test_remove(self, cache) -> None:
        cache.put(NS, "k", "v")
        cache.remove(NS, "k")
        cache.remove(NS, "missing")
        assert cache.get(NS, "k") is None

    def test_entry_expires_after_ttl(self) -> None:
        cache = MetadataCache(ttl=60)
        with patch("cache.store.time") as clock:
            clock.time.return_value = 1000.0
            cache.put(NS, "k", "v")
            clock.time.return_value = 1060.0
            assert cache.get(NS, "k") == "v"
            clock.time.return_value = 1061.0
            assert cache.get(NS, "k") is None
        cache.close()

    def test_purge_expired(self) -> None:
        cache = MetadataCache(ttl=60)
        with patch("cache.store.time") as clock:
            clock.time.return_value = 1000.0
            cache.put(NS, "old", 1)
            clock.time.return_value = 1050.0
            cache.put(NS, "fresh", 2)
            clock.time.return_value = 1070.0
            assert cache.purge_expired() == 1
            assert cache.get(NS, "fresh") == 2
        cache.close()

    def test_oldest_entries_evicted_beyond_bound(self) -> None:
        cache = MetadataCache(max_entries=2)
        with patch("cache.store.time") as clock:
            for i, key in enumerate(("a", "b", "c")):
                clock.time.return_value = 1000.0 + i
                cache.put(NS, key, i)
            assert cache.get(NS, "a") is None
            assert (cache.get(NS, "b"), cache.get(NS, "c")) == (1, 2)
        cache.close()

    def test_clear(self, cache) -> None:
        cache.put(NS, "k", "v")
        cache.clear()
        assert cache.get(NS, "k") is None

    def test_file_backed_cache_survives_reopen(self, tmp_path) -> None:
        path = tmp_path / "metadata.db"
        first = MetadataCache(path)
        first.put(NS, "k", {"v": 1})
        first.close()
        second = MetadataCache(path)
        assert second.get(NS, "k") == {"v": 1}
        second.close()

    def test_from_settings(self) -> None:
        cache = MetadataCache.from_settings(make_settings(cache_ttl_seconds=5, cache_max_entries=3))
        assert (cache.ttl, cache.max_entries) == (5, 3)
        cache.close()
