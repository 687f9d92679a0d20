# coding: utf-8
"""
Redis Manager for the exchange rate cache

Every failure degrades to a cache miss: unlock pricing falls back to the
in-memory rate, the last known rate or the configured fallback rate.
"""
import json
from decimal import Decimal
from typing import Any, Optional

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError
from loguru import logger

from config.cache_config import CacheConfig, CacheTTL


def _encode(value: Any) -> str:
    if isinstance(value, str):
        return value
    # Rates are Decimal; store them as strings so no precision is lost
    return json.dumps(value, default=lambda obj: str(obj) if isinstance(obj, Decimal) else obj.isoformat())


class RedisManager:
    """
    Pooled async Redis client used for cached rate payloads

    Usage:
        >>> redis_mgr = RedisManager()
        >>> await redis_mgr.initialize()
        >>> await redis_mgr.set("unlock:exchange_rate:latest:USD_RWF", {"rate": "1450.5"}, ttl=3600)
        >>> await redis_mgr.get("unlock:exchange_rate:latest:USD_RWF")
        {'rate': '1450.5'}
    """

    def __init__(self):
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_available = False
        self._stats = {"hits": 0, "misses": 0, "errors": 0, "sets": 0}

    async def initialize(self) -> bool:
        """Connect and ping; returns False when rates must be cached in memory only"""
        if not CacheConfig.CACHE_ENABLED:
            logger.info("Rate cache disabled (CACHE_ENABLED=false)")
            return False

        try:
            self._pool = ConnectionPool.from_url(
                CacheConfig.REDIS_URL,
                max_connections=CacheConfig.REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                socket_connect_timeout=CacheConfig.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=CacheConfig.REDIS_SOCKET_TIMEOUT,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed: {e}")
            self._is_available = False
            return False
        except Exception as e:
            logger.error(f"Unexpected error initializing Redis: {e}")
            self._is_available = False
            return False

        self._is_available = True
        logger.info(f"Redis initialized (max_connections={CacheConfig.REDIS_MAX_CONNECTIONS})")
        return True

    async def close(self):
        if self._client:
            try:
                await self._client.aclose()  # type: ignore
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")

        if self._pool:
            await self._pool.aclose()  # type: ignore

        self._is_available = False

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded JSON payload stored at ``key``, or ``default``"""
        if not self._is_available:
            return default

        try:
            value = await self._client.get(key)  # type: ignore
        except RedisError as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis GET error for key '{key}': {e}")
            if CacheConfig.CACHE_RAISE_ON_ERROR:
                raise
            return default

        if value is None:
            self._stats["misses"] += 1
            if CacheConfig.CACHE_LOG_MISSES:
                logger.debug(f"Cache MISS: {key}")
            return default

        self._stats["hits"] += 1
        if CacheConfig.CACHE_LOG_HITS:
            logger.debug(f"Cache HIT: {key}")

        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self._is_available:
            return False

        ttl = ttl or CacheTTL.DEFAULT
        try:
            await self._client.setex(key, ttl, _encode(value))  # type: ignore
        except (RedisError, TypeError, AttributeError) as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis SET error for key '{key}': {e}")
            if CacheConfig.CACHE_RAISE_ON_ERROR:
                raise
            return False

        self._stats["sets"] += 1
        logger.debug(f"Cache SET: {key} (TTL={ttl}s)")
        return True

    def get_stats(self) -> dict:
        """Hit/miss counters, reported by the health endpoint"""
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "total_requests": total,
            "hit_rate": round(self._stats["hits"] / total, 2) if total else 0,
            "is_available": self._is_available,
        }

    def is_available(self) -> bool:
        return self._is_available


# Global Redis manager instance
_redis_manager: Optional[RedisManager] = None


def get_redis_manager() -> RedisManager:
    """Process-wide manager, initialized in the app lifespan"""
    global _redis_manager
    if _redis_manager is None:
        _redis_manager = RedisManager()
    return _redis_manager
