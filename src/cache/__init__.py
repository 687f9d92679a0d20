# coding: utf-8
"""
Cache module for Redis integration

Caches exchange rates fetched from the rate feed.
"""

from src.cache.redis_manager import RedisManager, get_redis_manager
from src.cache.cache_keys import CacheKeyBuilder, exchange_rate_key

__all__ = [
    "RedisManager",
    "get_redis_manager",
    "CacheKeyBuilder",
    "exchange_rate_key",
]
