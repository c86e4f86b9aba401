"""
Tests for the Redis cache layer.

Covers:
- get/set/delete round trip and TTL tiers
- glob-pattern invalidation, including user ids with glob metacharacters
- degradation: no client, Redis errors and corrupt values all behave as misses
- invalidate_user_caches scope (per body area vs all areas)
"""

import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.cache import CacheKeys, CacheLayer, CacheTTL, cache_key, escape_glob, ttl_seconds
from core.config import settings
from services.aggregate_stats import AggregateComputer


class TestCacheKey:
    def test_cache_key_joins_parts(self):
        assert cache_key(CacheKeys.USER_STATS, "alice", "all") == "user_stats:alice:all"

    def test_cache_key_skips_none(self):
        assert cache_key(CacheKeys.BODY_AREA_STATS, "alice", None) == "body_area_stats:alice"

    def test_cache_key_kwargs_sorted(self):
        assert cache_key("p", "u", limit=20, cursor="c") == "p:u:cursor:c:limit:20"

    def test_escape_glob(self):
        assert escape_glob("a*b?[c]") == "a\\*b\\?\\[c\\]"

    def test_ttl_tiers_come_from_settings(self):
        assert ttl_seconds(CacheTTL.SHORT) == settings.CACHE_TTL_SHORT
        assert ttl_seconds(CacheTTL.DAILY) == settings.CACHE_TTL_DAILY


class TestRoundTrip:
    def test_set_then_get(self, cache):
        assert cache.set("k", {"a": 1, "b": [1, 2]}) is True
        assert cache.get("k") == {"a": 1, "b": [1, 2]}

    def test_set_uses_tier_ttl(self, cache, fake_redis):
        cache.set("k", 1, CacheTTL.LONG)
        assert fake_redis._ttls["k"] == settings.CACHE_TTL_LONG

    def test_get_missing_returns_none(self, cache):
        assert cache.get("missing") is None

    def test_delete(self, cache):
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.get("k") is None

    def test_delete_pattern(self, cache):
        cache.set("user_stats:alice:all", 1)
        cache.set("user_stats:alice:2026", 2)
        cache.set("user_stats:bob:all", 3)

        assert cache.delete_pattern("user_stats:alice:*") == 2
        assert cache.get("user_stats:alice:all") is None
        assert cache.get("user_stats:bob:all") == 3

    def test_typed_helpers(self, cache):
        cache.cache_user_stats("alice", {"total_sessions": 4})
        cache.cache_streaks("alice", [{"streak_type": "daily"}])
        cache.cache_milestones("alice", {"total_sessions": 4})
        cache.cache_body_area_stats("alice", "licht", [{"body_area": "licht"}])
        cache.cache_insights("alice", [{"insight_type": "motivation"}])

        assert cache.get_cached_user_stats("alice") == {"total_sessions": 4}
        assert cache.get_cached_streaks("alice") == [{"streak_type": "daily"}]
        assert cache.get_cached_milestones("alice") == {"total_sessions": 4}
        assert cache.get_cached_body_area_stats("alice", "licht") == [{"body_area": "licht"}]
        assert cache.get_cached_body_area_stats("alice", None) is None
        assert cache.get_cached_insights("alice") == [{"insight_type": "motivation"}]

    def test_insights_use_short_ttl_and_can_be_dropped(self, cache, fake_redis):
        cache.cache_insights("alice", [])
        assert fake_redis._ttls["insights:alice"] == settings.CACHE_TTL_SHORT
        assert cache.invalidate_insights("alice") is True
        assert cache.get_cached_insights("alice") is None


class TestDegradation:
    """Cache failures never reach the caller."""

    def test_disabled_cache_is_always_empty(self):
        cache = CacheLayer(None)
        assert cache.enabled is False
        assert cache.set("k", 1) is False
        assert cache.get("k") is None
        assert cache.delete("k") is False
        assert cache.delete_pattern("*") == 0
        assert cache.invalidate_user_caches("alice") == 0
        assert cache.health_check() is False

    def test_redis_errors_degrade_to_miss(self):
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        client.delete.side_effect = RedisConnectionError("down")
        client.scan_iter.side_effect = RedisConnectionError("down")
        client.ping.side_effect = RedisConnectionError("down")
        cache = CacheLayer(client)

        assert cache.get("k") is None
        assert cache.set("k", 1) is False
        assert cache.delete("k") is False
        assert cache.delete_pattern("user_stats:*") == 0
        assert cache.invalidate_user_caches("alice", "licht") == 0
        assert cache.health_check() is False

    def test_corrupt_value_is_a_miss(self, cache, fake_redis):
        fake_redis.setex("k", 60, "{not json")
        assert cache.get("k") is None

    def test_non_json_values_are_stringified(self, cache):
        assert cache.set("k", {"obj": object()}) is True
        assert isinstance(cache.get("k")["obj"], str)


class TestInvalidateUserCaches:
    def _seed(self, cache):
        for key in [
            "user_stats:alice:all",
            "user_stats:alice:2026-01-01_2026-02-01",
            "body_area_stats:alice:licht",
            "body_area_stats:alice:kaelte",
            "body_area_stats:alice:all",
            "streaks:alice",
            "milestones:alice",
            "progress_history:alice:start:20:all",
            "trends:alice:2026-01-01_2026-03-01",
            "insights:alice",
            "user_stats:alicia:all",
            "streaks:bob",
        ]:
            cache.set(key, 1)

    def test_with_body_area_keeps_other_areas(self, cache, fake_redis):
        self._seed(cache)
        cache.invalidate_user_caches("alice", "licht")

        remaining = set(fake_redis._store)
        assert remaining == {"body_area_stats:alice:kaelte", "user_stats:alicia:all", "streaks:bob"}

    def test_without_body_area_drops_every_area(self, cache, fake_redis):
        self._seed(cache)
        cache.invalidate_user_caches("alice")

        assert set(fake_redis._store) == {"user_stats:alicia:all", "streaks:bob"}

    def test_glob_characters_in_user_id_match_literally(self, cache, fake_redis):
        cache.set("user_stats:a*:all", 1)
        cache.set("user_stats:abc:all", 2)

        cache.invalidate_user_caches("a*")

        assert "user_stats:a*:all" not in fake_redis._store
        assert json.loads(fake_redis._store["user_stats:abc:all"]) == 2


class TestInvalidationForcesRecompute:
    def test_cached_stats_then_invalidate_is_a_miss(self, cache, db_session):
        """Caching alice's stats, invalidating, then reading recomputes from the ledger."""
        stale = {"total_sessions": 99, "marker": "stale"}
        cache.cache_user_stats("alice", stale)
        assert cache.get_cached_user_stats("alice") == stale

        cache.invalidate_user_caches("alice")
        assert cache.get_cached_user_stats("alice") is None

        fresh = AggregateComputer(cache).get_user_stats(db_session, "alice")
        assert fresh["total_sessions"] == 0
        assert "marker" not in fresh


@pytest.mark.parametrize("tier", list(CacheTTL))
def test_every_tier_has_positive_ttl(tier):
    assert ttl_seconds(tier) > 0
