"""Redis configuration and connection management."""

import os
import redis
from redis import ConnectionPool
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "10"))

# Lockout Redis Keys
LOCKOUT_KEY_PREFIX = "lockout:"

# Redis Connection Pool
_redis_pool: Optional[ConnectionPool] = None


def get_redis_pool() -> ConnectionPool:
    """Get Redis connection pool."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            REDIS_URL,
            password=REDIS_PASSWORD,
            max_connections=REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30
        )
    return _redis_pool


def get_redis_client() -> redis.Redis:
    """Get a Redis client bound to the shared connection pool."""
    return redis.Redis(connection_pool=get_redis_pool())


def close_redis_connections():
    """Close Redis connections."""
    global _redis_pool
    if _redis_pool:
        _redis_pool.disconnect()
        _redis_pool = None


def ping_redis() -> bool:
    """Test Redis connection."""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError:
        return False


class RedisKeyBuilder:
    """Build Redis keys with consistent naming."""

    @staticmethod
    def lockout_key(identifier: str) -> str:
        """Build lockout record key."""
        return f"{LOCKOUT_KEY_PREFIX}{identifier}"
