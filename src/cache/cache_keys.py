# coding: utf-8
"""
Cache key generation

Key format: {namespace}:{service}:{method}:{params}, e.g.
``unlock:exchange_rate:latest:USD_RWF``.
"""
from typing import Iterable, Optional, Union

from config.cache_config import CacheConfig


class CacheKeyBuilder:
    SEPARATOR = CacheConfig.CACHE_KEY_SEPARATOR
    NAMESPACE = CacheConfig.CACHE_NAMESPACE

    @classmethod
    def build(
        cls,
        service: str,
        method: str,
        params: Optional[Union[str, Iterable[str]]] = None,
    ) -> str:
        """
        Examples:
            >>> CacheKeyBuilder.build('exchange_rate', 'last_known', ['USD', 'RWF'])
            'unlock:exchange_rate:last_known:USD_RWF'
        """
        key_parts = [cls.NAMESPACE, service, method]

        if params:
            key_parts.append(params if isinstance(params, str) else "_".join(str(p) for p in params))

        return cls.SEPARATOR.join(key_parts)


def exchange_rate_key(method: str, base: str, quote: str) -> str:
    """``latest`` holds the fresh rate, ``last_known`` the long-lived fallback copy"""
    return CacheKeyBuilder.build("exchange_rate", method, [base.upper(), quote.upper()])
