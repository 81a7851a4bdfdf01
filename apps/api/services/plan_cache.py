"""
Plan Look-Aside Cache

Per-user snapshot of the active plan, one namespace per plan kind:

    cache:workout-plans:user:{user_id}
    cache:diet-plans:user:{user_id}

The cache is advisory. The plan store is the source of truth; every error
here is logged and swallowed, and a miss is always safe.

Usage:
    cache = PlanCache("cache:diet-plans:user", ttl_s=86400, redis=get_redis_client())

    snapshot = cache.get(user_id)
    cache.set(user_id, snapshot)
    cache.invalidate(user_id)
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from core.cache import cache_key

logger = logging.getLogger(__name__)


class PlanCache:
    """
    Redis-backed plan snapshot cache with an in-process fallback.
    """

    def __init__(self, prefix: str, ttl_s: int, redis=None):
        """
        Args:
            prefix: Key namespace, e.g. "cache:workout-plans:user"
            ttl_s: Redis expiry for each entry
            redis: Redis client (optional, uses in-memory if not provided)
        """
        self.prefix = prefix
        self.ttl_s = ttl_s
        self.redis = redis
        self._local_cache: Dict[str, Any] = {}
        self._local_expiry: Dict[str, datetime] = {}

    def key(self, user_id: UUID) -> str:
        return cache_key(self.prefix, user_id)

    def get(self, user_id: UUID) -> Optional[Dict[str, Any]]:
        """Cached snapshot for `user_id`, or None on miss or error."""
        return self._get(self.key(user_id))

    def set(self, user_id: UUID, snapshot: Dict[str, Any]) -> None:
        self._set(self.key(user_id), snapshot, self.ttl_s)

    def invalidate(self, user_id: UUID) -> None:
        self._delete(self.key(user_id))

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if self.redis:
            try:
                return {
                    "type": "redis",
                    "prefix": self.prefix,
                    "ttl_s": self.ttl_s,
                    "keys": self.redis.dbsize(),
                }
            except Exception as e:
                logger.warning(f"Cache stats error for {self.prefix}: {e}")
                return {"type": "redis", "prefix": self.prefix, "error": str(e)}
        return {
            "type": "local",
            "prefix": self.prefix,
            "ttl_s": self.ttl_s,
            "keys": len(self._local_cache),
        }

    # ========== Internal Methods ==========

    def _get(self, key: str) -> Optional[Any]:
        if self.redis:
            try:
                value = self.redis.get(key)
                if value:
                    return json.loads(value)
            except Exception as e:
                logger.warning(f"Cache get error for {key}: {e}")
        else:
            # Check local cache with expiry
            if key in self._local_cache:
                expiry = self._local_expiry.get(key)
                if expiry is None or expiry > datetime.now(timezone.utc):
                    return self._local_cache[key]
                # Expired
                del self._local_cache[key]
                del self._local_expiry[key]

        return None

    def _set(self, key: str, value: Any, ttl: Optional[int]):
        if self.redis:
            try:
                serialized = json.dumps(value, default=str)
                if ttl:
                    self.redis.setex(key, ttl, serialized)
                else:
                    self.redis.set(key, serialized)
            except Exception as e:
                logger.warning(f"Cache set error for {key}: {e}")
        else:
            # Round-trip through JSON so local entries match what Redis returns
            self._local_cache[key] = json.loads(json.dumps(value, default=str))
            if ttl:
                self._local_expiry[key] = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            else:
                self._local_expiry[key] = None

    def _delete(self, key: str):
        if self.redis:
            try:
                self.redis.delete(key)
            except Exception as e:
                logger.warning(f"Cache delete error for {key}: {e}")
        else:
            self._local_cache.pop(key, None)
            self._local_expiry.pop(key, None)
