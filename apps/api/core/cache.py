"""
Redis Client

Process-wide redis-py client with graceful degradation: callers get None
when Redis is unreachable and must treat caching/locking as optional.
"""
import logging
import uuid
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        # Test connection
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        _redis_client = None
        return None


def cache_key(prefix: str, *args) -> str:
    """Generate cache key from prefix and arguments (None values skipped)."""
    key_parts = [prefix.rstrip(":")]
    for arg in args:
        if arg is not None:
            key_parts.append(str(arg))
    return ":".join(key_parts)


# Delete the latch only if it still holds our token
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def acquire_lock(key: str, ttl_s: int) -> Optional[str]:
    """
    Acquire a short-lived Redis latch.
    Returns the holder token if acquired, None if someone else holds it.
    Fails open (returns a token) when Redis is unavailable.
    """
    token = uuid.uuid4().hex
    client = get_redis_client()
    if not client:
        return token

    try:
        if client.set(key, token, nx=True, ex=ttl_s):
            return token
        return None
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock acquire error for key {key}: {e}")
        return token


def release_lock(key: str, token: str) -> None:
    """
    Release a latch taken with acquire_lock().

    A latch that expired and was taken by another holder is left alone.
    """
    client = get_redis_client()
    if not client:
        return
    try:
        client.eval(_RELEASE_LUA, 1, key, token)
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock release error for key {key}: {e}")
