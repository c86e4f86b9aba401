"""
Redis Caching Layer

Best-effort key/value cache for derived aggregates. Every operation
degrades to a miss or a no-op when Redis is unavailable: a cache failure
is logged and never reaches the caller or blocks the write path.

The layer is an explicitly constructed object (see build_cache_layer) that
is created once at startup and passed to the services that need it.
"""
import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import redis
from redis.exceptions import RedisError

from core.config import Settings, settings

logger = logging.getLogger(__name__)

# Upper bound on keys deleted per DEL round trip during pattern invalidation
_DELETE_BATCH = 500


class CacheTTL(str, Enum):
    """Named expiry tiers. Seconds are resolved from Settings."""
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    DAILY = "daily"


class CacheKeys:
    """Key prefixes for derived aggregates."""
    USER_STATS = "user_stats"
    BODY_AREA_STATS = "body_area_stats"
    STREAKS = "streaks"
    MILESTONES = "milestones"
    PROGRESS_HISTORY = "progress_history"
    TRENDS = "trends"
    INSIGHTS = "insights"


def cache_key(prefix: str, *args, **kwargs) -> str:
    """Generate cache key from prefix and arguments."""
    key_parts = [prefix]

    # Add args (skip None values)
    for arg in args:
        if arg is not None:
            key_parts.append(str(arg))

    # Add kwargs (sorted for consistency, skip None values)
    for k, v in sorted(kwargs.items()):
        if v is not None:
            key_parts.append(f"{k}:{v}")

    return ":".join(key_parts)


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so an identifier matches literally."""
    out = []
    for ch in str(value):
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


def ttl_seconds(tier: CacheTTL, config: Settings = settings) -> int:
    return {
        CacheTTL.SHORT: config.CACHE_TTL_SHORT,
        CacheTTL.MEDIUM: config.CACHE_TTL_MEDIUM,
        CacheTTL.LONG: config.CACHE_TTL_LONG,
        CacheTTL.DAILY: config.CACHE_TTL_DAILY,
    }[tier]


class CacheLayer:
    """
    Best-effort JSON cache over a Redis client.

    A CacheLayer built with client=None is a valid, always-empty cache;
    the rest of the system stays correct (just slower) without Redis.
    """

    def __init__(self, client: Optional[redis.Redis], config: Settings = settings):
        self._client = client
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Generic contract
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Returns None if not found or Redis unavailable."""
        if self._client is None:
            return None

        try:
            value = self._client.get(key)
        except RedisError as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache value for key {key} is not valid JSON, treating as miss: {e}")
            return None

    def set(self, key: str, value: Any, ttl: CacheTTL = CacheTTL.MEDIUM) -> bool:
        """Set value in cache. Returns True if successful, False otherwise."""
        if self._client is None:
            return False

        try:
            # default=str handles datetime, UUID, Decimal
            payload = json.dumps(value, default=str)
            self._client.setex(key, ttl_seconds(ttl, self._config), payload)
            return True
        except (RedisError, TypeError, ValueError) as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete key from cache. Returns True if successful, False otherwise."""
        if self._client is None:
            return False

        try:
            self._client.delete(key)
            return True
        except RedisError as e:
            logger.warning(f"Cache delete error for key {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns count of deleted keys."""
        if self._client is None:
            return 0

        deleted = 0
        try:
            batch: List[str] = []
            for key in self._client.scan_iter(match=pattern, count=_DELETE_BATCH):
                batch.append(key)
                if len(batch) >= _DELETE_BATCH:
                    deleted += self._client.delete(*batch) or 0
                    batch = []
            if batch:
                deleted += self._client.delete(*batch) or 0
            return deleted
        except RedisError as e:
            logger.warning(f"Cache invalidation error for pattern {pattern}: {e}")
            return deleted

    def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def cache_user_stats(self, user_id: str, data: Dict, range_token: str = "all") -> bool:
        return self.set(cache_key(CacheKeys.USER_STATS, user_id, range_token), data, CacheTTL.MEDIUM)

    def get_cached_user_stats(self, user_id: str, range_token: str = "all") -> Optional[Dict]:
        return self.get(cache_key(CacheKeys.USER_STATS, user_id, range_token))

    def cache_body_area_stats(self, user_id: str, body_area: Optional[str], data: Any) -> bool:
        return self.set(
            cache_key(CacheKeys.BODY_AREA_STATS, user_id, body_area or "all"), data, CacheTTL.LONG
        )

    def get_cached_body_area_stats(self, user_id: str, body_area: Optional[str]) -> Optional[Any]:
        return self.get(cache_key(CacheKeys.BODY_AREA_STATS, user_id, body_area or "all"))

    def cache_streaks(self, user_id: str, data: Any) -> bool:
        return self.set(cache_key(CacheKeys.STREAKS, user_id), data, CacheTTL.MEDIUM)

    def get_cached_streaks(self, user_id: str) -> Optional[Any]:
        return self.get(cache_key(CacheKeys.STREAKS, user_id))

    def cache_milestones(self, user_id: str, data: Dict) -> bool:
        return self.set(cache_key(CacheKeys.MILESTONES, user_id), data, CacheTTL.LONG)

    def get_cached_milestones(self, user_id: str) -> Optional[Dict]:
        return self.get(cache_key(CacheKeys.MILESTONES, user_id))

    def cache_insights(self, user_id: str, data: Any) -> bool:
        return self.set(cache_key(CacheKeys.INSIGHTS, user_id), data, CacheTTL.SHORT)

    def get_cached_insights(self, user_id: str) -> Optional[Any]:
        return self.get(cache_key(CacheKeys.INSIGHTS, user_id))

    def invalidate_insights(self, user_id: str) -> bool:
        """Drop the unviewed-insights list after insights are generated or marked viewed."""
        return self.delete(cache_key(CacheKeys.INSIGHTS, user_id))

    def invalidate_user_caches(self, user_id: str, body_area: Optional[str] = None) -> int:
        """
        Delete every key that could hold a stale aggregate for this user.

        Called after a ledger write commits. With a body area only that
        area's stats (plus the all-areas rollup) are dropped.
        """
        uid = escape_glob(user_id)
        patterns = [
            f"{CacheKeys.USER_STATS}:{uid}:*",
            f"{CacheKeys.STREAKS}:{uid}",
            f"{CacheKeys.MILESTONES}:{uid}",
            f"{CacheKeys.PROGRESS_HISTORY}:{uid}:*",
            f"{CacheKeys.TRENDS}:{uid}:*",
            f"{CacheKeys.INSIGHTS}:{uid}",
        ]
        if body_area:
            patterns.append(f"{CacheKeys.BODY_AREA_STATS}:{uid}:{escape_glob(body_area)}")
            patterns.append(f"{CacheKeys.BODY_AREA_STATS}:{uid}:all")
        else:
            patterns.append(f"{CacheKeys.BODY_AREA_STATS}:{uid}:*")

        total_deleted = self._delete_patterns(patterns)
        logger.info(f"Invalidated {total_deleted} cache entries for user {user_id}")
        return total_deleted

    def _delete_patterns(self, patterns: Iterable[str]) -> int:
        total = 0
        for pattern in patterns:
            total += self.delete_pattern(pattern)
        return total


def build_cache_layer(config: Settings = settings) -> CacheLayer:
    """
    Create the process-wide cache layer.

    The client connects lazily; if Redis is down at startup, calls simply
    degrade to misses until it comes back.
    """
    try:
        client = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=config.CACHE_SOCKET_TIMEOUT_S,
            socket_timeout=config.CACHE_SOCKET_TIMEOUT_S,
            retry_on_timeout=False,
            health_check_interval=30,
        )
    except (RedisError, ValueError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        return CacheLayer(None, config)
    return CacheLayer(client, config)
