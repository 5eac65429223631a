"""
Entitlement Cache - Redis-backed cache with explicit invalidation.

Provides:
- EntitlementCache: per (workspace, feature) cache of resolver snapshots
- Invalidation of a single feature key or a whole workspace
- TTL-based expiration bounding staleness if an invalidation is lost

The cache is an optimisation only: every read failure degrades to
recomputation and the resolver behaves identically with caching disabled.
"""

import fnmatch
import json
import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Tuple

import redis

from workspace_entitlements.entitlements.result import EntitlementResult

logger = logging.getLogger(__name__)

# Cache configuration
DEFAULT_CACHE_TTL_SECONDS = 60
INVALIDATION_CHANNEL = "entitlements:invalidations"


def _cache_enabled_from_env() -> bool:
    return os.getenv("ENTITLEMENT_CACHE_ENABLED", "true").lower() not in ("0", "false", "no")


class RedisClient:
    """
    Redis client wrapper with connection pooling and fallback.

    Provides graceful degradation when Redis is unavailable: every
    operation logs a warning and reports a miss instead of raising.
    """

    _instance: Optional["RedisClient"] = None
    _lock = Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, redis_url: Optional[str] = None):
        if self._initialized:
            return

        self._redis = None
        self._available = False
        self._connect(redis_url or os.getenv("REDIS_URL"))
        self._initialized = True

    def _connect(self, redis_url: Optional[str]) -> None:
        """Connect to Redis if configured."""
        if not redis_url:
            logger.info("REDIS_URL not configured - using in-memory entitlement cache")
            return

        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for entitlement cache")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} - using in-memory entitlement cache")

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests, reconfiguration)."""
        with cls._lock:
            cls._instance = None

    @property
    def available(self) -> bool:
        """Check if Redis is available."""
        return self._available and self._redis is not None

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        if not self.available:
            return False
        try:
            self._redis.setex(key, ttl_seconds, value)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}")
            return False

    def delete(self, *keys: str) -> int:
        if not self.available or not keys:
            return 0
        try:
            return self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed: {e}")
            return 0

    def delete_pattern(self, pattern: str) -> int:
        if not self.available:
            return 0
        try:
            keys = list(self._redis.scan_iter(pattern))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE pattern failed: {e}")
            return 0

    def publish(self, channel: str, message: str) -> int:
        if not self.available:
            return 0
        try:
            return self._redis.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Redis PUBLISH failed: {e}")
            return 0


class InMemoryCache:
    """
    In-process cache used alongside (or instead of) Redis.

    Thread-safe with basic TTL support.
    """

    def __init__(self, max_size: int = 10000):
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()
        self._max_size = max_size

    def get(self, key: str, ttl_seconds: int) -> Optional[str]:
        with self._lock:
            if key not in self._cache:
                return None
            value, cached_at = self._cache[key]
            if (datetime.now(timezone.utc) - cached_at).total_seconds() > ttl_seconds:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[key] = (value, datetime.now(timezone.utc))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys_to_delete = [k for k in self._cache if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class EntitlementCache:
    """
    Caching layer for resolver snapshots.

    Keys are entitlement:<workspace_id>:<feature_code>. While Redis is
    available it is the only layer read, so an invalidation issued by any
    process is seen by all of them. The in-process cache is used only
    while Redis is unavailable.

    Usage:
        cache = EntitlementCache()

        cached = cache.get(workspace_id, "ai.credits")
        if cached is None:
            cached = compute(...)
            cache.set(workspace_id, "ai.credits", cached)

        # After any write affecting the workspace
        cache.invalidate(workspace_id, reason="package.provisioned")
    """

    CACHE_KEY_PREFIX = "entitlement:"

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        ttl_seconds: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        self._redis = redis_client if redis_client is not None else RedisClient()
        self._memory_cache = InMemoryCache()
        self._ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else int(os.getenv("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))
        )
        self._enabled = _cache_enabled_from_env() if enabled is None else enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _cache_key(self, workspace_id: str, feature_code: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{workspace_id}:{feature_code}"

    def _workspace_pattern(self, workspace_id: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{workspace_id}:*"

    def get(self, workspace_id: str, feature_code: str) -> Optional[EntitlementResult]:
        """Return the cached snapshot, or None on miss/expiry/decode failure."""
        if not self._enabled:
            return None

        key = self._cache_key(workspace_id, feature_code)

        if self._redis.available:
            data = self._redis.get(key)
            if data:
                try:
                    cached = EntitlementResult.from_json(data)
                    logger.debug("Cache hit (Redis)", extra={"cache_key": key})
                    return cached
                except (ValueError, TypeError) as e:
                    logger.warning(f"Failed to deserialize cached entitlement: {e}")
            logger.debug("Cache miss", extra={"cache_key": key})
            return None

        data = self._memory_cache.get(key, self._ttl_seconds)
        if data:
            try:
                cached = EntitlementResult.from_json(data)
                logger.debug("Cache hit (memory)", extra={"cache_key": key})
                return cached
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to deserialize memory cached entitlement: {e}")

        logger.debug("Cache miss", extra={"cache_key": key})
        return None

    def set(self, workspace_id: str, feature_code: str, result: EntitlementResult) -> bool:
        if not self._enabled:
            return False

        key = self._cache_key(workspace_id, feature_code)
        data = result.to_json()

        if not (self._redis.available and self._redis.set(key, data, self._ttl_seconds)):
            self._memory_cache.set(key, data)

        logger.debug(
            "Cached entitlement snapshot",
            extra={"cache_key": key, "ttl_seconds": self._ttl_seconds},
        )
        return True

    def invalidate(
        self,
        workspace_id: str,
        feature_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Invalidate one feature key, or every key of the workspace.

        Returns the number of entries removed (across both layers).
        """
        if feature_code is not None:
            key = self._cache_key(workspace_id, feature_code)
            count = self._redis.delete(key) if self._redis.available else 0
            if self._memory_cache.delete(key):
                count += 1
        else:
            pattern = self._workspace_pattern(workspace_id)
            count = self._redis.delete_pattern(pattern) if self._redis.available else 0
            count += self._memory_cache.delete_pattern(pattern)

        if self._redis.available:
            self._redis.publish(
                INVALIDATION_CHANNEL,
                json.dumps({
                    "workspace_id": workspace_id,
                    "feature_code": feature_code,
                    "reason": reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }),
            )

        if count:
            logger.info(
                "Invalidated entitlement cache",
                extra={
                    "workspace_id": workspace_id,
                    "feature_code": feature_code,
                    "reason": reason,
                    "entries": count,
                },
            )
        return count

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Invalidate every cached entitlement.

        Use with caution - only for catalog reloads or emergencies.
        """
        count = 0
        if self._redis.available:
            count = self._redis.delete_pattern(f"{self.CACHE_KEY_PREFIX}*")
        count += len(self._memory_cache)
        self._memory_cache.clear()

        logger.warning(
            f"Mass invalidation of entitlement cache ({count} entries)",
            extra={"reason": reason},
        )
        return count


# Module-level singleton
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """Get the singleton EntitlementCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = EntitlementCache()
    return _cache_instance


def invalidate_workspace_entitlements(
    workspace_id: str,
    feature_code: Optional[str] = None,
    reason: Optional[str] = None,
) -> int:
    """Convenience for invalidation outside a service instance (cache-only)."""
    return get_entitlement_cache().invalidate(workspace_id, feature_code, reason)
