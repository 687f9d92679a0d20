# coding: utf-8
"""
Redis settings for the exchange rate cache

Exchange rates are the only externally fetched data cached by the unlock
service; everything money-related is read from the database.
"""
import os


class CacheTTL:
    """TTLs in seconds"""

    EXCHANGE_RATE = int(os.getenv("CACHE_TTL_EXCHANGE_RATE", "3600"))
    """Fresh USD->local mid rate - 1 hour"""

    EXCHANGE_RATE_LAST_KNOWN = int(os.getenv("CACHE_TTL_EXCHANGE_RATE_LAST_KNOWN", "604800"))
    """Last successfully fetched rate, served while the feed is down - 7 days"""

    DEFAULT = int(os.getenv("CACHE_TTL_DEFAULT", "300"))


class CacheConfig:
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "10"))
    REDIS_SOCKET_TIMEOUT = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    REDIS_SOCKET_CONNECT_TIMEOUT = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))

    CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
    CACHE_NAMESPACE = os.getenv("CACHE_NAMESPACE", "unlock")
    CACHE_KEY_SEPARATOR = ":"

    # false: a Redis outage is a cache miss, never a pricing error
    CACHE_RAISE_ON_ERROR = os.getenv("CACHE_RAISE_ON_ERROR", "false").lower() == "true"

    CACHE_LOG_HITS = os.getenv("CACHE_LOG_HITS", "false").lower() == "true"
    CACHE_LOG_MISSES = os.getenv("CACHE_LOG_MISSES", "true").lower() == "true"
