"""Unit tests for expiring_cache.py — TTL semantics with an injected clock."""

import pytest

from expiring_cache import DEFAULT_TTL_SECONDS, ExpiringCache, coord_key


class TestExpiringCache:
    def test_default_ttl_is_thirty_minutes(self):
        assert DEFAULT_TTL_SECONDS == 1800
        assert ExpiringCache().ttl_seconds == 1800

    def test_miss_on_unknown_key(self, cache):
        assert cache.get("nope") is None

    def test_value_available_before_expiry(self, cache, clock):
        cache.set("k", {"v": 1})
        clock.advance(DEFAULT_TTL_SECONDS - 1)
        assert cache.get("k") == {"v": 1}

    def test_value_gone_after_expiry(self, cache, clock):
        cache.set("k", "v")
        clock.advance(DEFAULT_TTL_SECONDS + 0.001)
        assert cache.get("k") is None

    def test_expired_entry_is_evicted_on_read(self, cache, clock):
        cache.set("a", 1)
        cache.set("b", 2)
        clock.advance(DEFAULT_TTL_SECONDS + 1)
        assert len(cache) == 2  # no background sweep
        cache.get("a")
        assert len(cache) == 1

    def test_set_refreshes_expiry(self, cache, clock):
        cache.set("k", 1)
        clock.advance(DEFAULT_TTL_SECONDS - 10)
        cache.set("k", 2)
        clock.advance(20)
        assert cache.get("k") == 2

    def test_contains_and_clear(self, cache):
        cache.set("k", 1)
        assert "k" in cache
        cache.clear()
        assert "k" not in cache
        assert len(cache) == 0

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValueError):
            ExpiringCache(ttl_seconds=0)


class TestCoordKey:
    def test_rounds_to_three_decimals(self):
        assert coord_key("nearby", 59.334591, 18.063240) == "nearby:59.335,18.063"

    def test_nearby_points_share_key(self):
        assert coord_key("w", 59.33441, 18.06312) == coord_key("w", 59.33449, 18.06304)

    def test_prefix_separates_namespaces(self):
        assert coord_key("nearby", 1, 2) != coord_key("walkability", 1, 2)
