# coding: utf-8
"""
Exchange rate service (USD -> local currency)

Rates come from the Hexarate feed and are cached for an hour in memory and
Redis. When the feed is down the last known rate is used regardless of age,
and as a last resort a configured fallback rate. Fee calculation never fails
just because the feed is unavailable.
"""
import asyncio
import logging  # Needed for tenacity before_sleep_log level constants
import time
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.cache_config import CacheTTL
from config.config import (
    EXCHANGE_API_URL,
    EXCHANGE_RATE_TIMEOUT,
    EXCHANGE_RATE_FALLBACK,
    LOCAL_CURRENCY,
)
from config.unlock_pricing import DEFAULT_PRICING, UnlockPricing
from src.cache import get_redis_manager, exchange_rate_key, RedisManager


CENTS = Decimal("0.01")


class ExchangeRateFeedError(Exception):
    """Feed answered with an error status or an unusable payload"""


class ExchangeRateUnavailable(Exception):
    """No live, cached or fallback rate exists for the pair"""


@dataclass(frozen=True)
class ExchangeRate:
    """A base->quote mid rate and where it came from"""

    base: str
    quote: str
    rate: Decimal
    as_of: datetime
    source: str  # live, memory, redis, stale, fallback
    deposit_spread: Decimal = DEFAULT_PRICING.deposit_spread
    payout_spread: Decimal = DEFAULT_PRICING.payout_spread

    @property
    def deposit_rate(self) -> Decimal:
        """Rate used when collecting money (+0.5%)"""
        return self.rate * (1 + self.deposit_spread)

    @property
    def payout_rate(self) -> Decimal:
        """Rate used when paying money out (-2.5%)"""
        return self.rate * (1 - self.payout_spread)

    def convert_usd_to_local(self, amount_usd: Decimal) -> Decimal:
        return (Decimal(amount_usd) * self.rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    def convert_local_to_usd(self, amount_local: Decimal) -> Decimal:
        return (Decimal(amount_local) / self.rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def to_cache(self) -> dict:
        return {"rate": str(self.rate), "as_of": self.as_of.isoformat()}

    @classmethod
    def from_cache(cls, base: str, quote: str, payload: dict, source: str) -> "ExchangeRate":
        return cls(
            base=base,
            quote=quote,
            rate=Decimal(payload["rate"]),
            as_of=datetime.fromisoformat(payload["as_of"]),
            source=source,
        )


class ExchangeRateService:
    """
    Cached exchange rate lookups

    Lookup order:
        fresh memory -> fresh Redis -> live feed -> last known -> fallback
    """

    def __init__(
        self,
        api_url: str = EXCHANGE_API_URL,
        timeout: int = EXCHANGE_RATE_TIMEOUT,
        fallback_rates: Optional[Dict[Tuple[str, str], Decimal]] = None,
        redis: Optional[RedisManager] = None,
        ttl: int = CacheTTL.EXCHANGE_RATE,
        pricing: UnlockPricing = DEFAULT_PRICING,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.ttl = ttl
        self.pricing = pricing
        self.redis = redis or get_redis_manager()
        self.fallback_rates = fallback_rates or {
            ("USD", LOCAL_CURRENCY.upper()): Decimal(EXCHANGE_RATE_FALLBACK),
        }

        # (base, quote) -> (rate, monotonic fetch time)
        self._memory: Dict[Tuple[str, str], Tuple[ExchangeRate, float]] = {}

    async def get_rate(self, base: str = "USD", quote: str = LOCAL_CURRENCY) -> ExchangeRate:
        """
        Get the current base->quote rate

        Raises:
            ExchangeRateUnavailable: only when the pair has never been fetched
                and has no configured fallback
        """
        base, quote = base.upper(), quote.upper()
        pair = (base, quote)

        if base == quote:
            return self._build(base, quote, Decimal("1"), datetime.now(UTC), "live")

        cached = self._memory.get(pair)
        if cached and time.monotonic() - cached[1] < self.ttl:
            return replace(cached[0], source="memory")

        redis_payload = await self.redis.get(exchange_rate_key("latest", base, quote))
        if redis_payload:
            try:
                rate = self._with_spreads(
                    ExchangeRate.from_cache(base, quote, redis_payload, "redis")
                )
                self._memory[pair] = (rate, time.monotonic())
                return rate
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                logger.warning(f"Ignoring malformed cached rate for {base}/{quote}: {e}")

        try:
            value, as_of = await self._fetch_rate(base, quote)
        except (aiohttp.ClientError, asyncio.TimeoutError, ExchangeRateFeedError) as e:
            logger.warning(f"Exchange rate feed failed for {base}/{quote}: {e}")
            return await self._last_known(base, quote)

        rate = self._build(base, quote, value, as_of, "live")
        await self._store(rate)
        logger.info(f"Exchange rate {base}/{quote} = {value} (as of {as_of.isoformat()})")
        return rate

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _fetch_rate(self, base: str, quote: str) -> Tuple[Decimal, datetime]:
        """
        GET {api_url}/{base}?target={quote}

        Response: {"status_code": 200, "data": {"mid": 1450.12, "timestamp": "..."}}
        """
        url = f"{self.api_url}/{base}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params={"target": quote}) as response:
                if response.status != 200:
                    raise ExchangeRateFeedError(f"HTTP {response.status}")
                payload = await response.json()

        data = (payload or {}).get("data") or {}
        try:
            mid = Decimal(str(data["mid"]))
        except (KeyError, InvalidOperation) as e:
            raise ExchangeRateFeedError(f"Missing mid rate: {payload}") from e

        if mid <= 0:
            raise ExchangeRateFeedError(f"Non-positive mid rate: {mid}")

        return mid, self._parse_timestamp(data.get("timestamp"))

    @staticmethod
    def _parse_timestamp(value) -> datetime:
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
            except ValueError:
                pass
        return datetime.now(UTC)

    async def _store(self, rate: ExchangeRate) -> None:
        pair = (rate.base, rate.quote)
        self._memory[pair] = (rate, time.monotonic())
        await self.redis.set(exchange_rate_key("latest", *pair), rate.to_cache(), ttl=self.ttl)
        await self.redis.set(
            exchange_rate_key("last_known", *pair),
            rate.to_cache(),
            ttl=CacheTTL.EXCHANGE_RATE_LAST_KNOWN,
        )

    async def _last_known(self, base: str, quote: str) -> ExchangeRate:
        cached = self._memory.get((base, quote))
        if cached:
            logger.warning(f"Using stale in-memory rate for {base}/{quote} from {cached[0].as_of}")
            return replace(cached[0], source="stale")

        payload = await self.redis.get(exchange_rate_key("last_known", base, quote))
        if payload:
            try:
                rate = ExchangeRate.from_cache(base, quote, payload, "stale")
                logger.warning(f"Using stale Redis rate for {base}/{quote} from {rate.as_of}")
                return self._with_spreads(rate)
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                logger.warning(f"Ignoring malformed last known rate for {base}/{quote}: {e}")

        fallback = self.fallback_rates.get((base, quote))
        if fallback is None:
            raise ExchangeRateUnavailable(f"No exchange rate available for {base}/{quote}")

        logger.error(f"Using fallback exchange rate {base}/{quote} = {fallback}")
        return self._build(base, quote, fallback, datetime.now(UTC), "fallback")

    def _build(self, base, quote, value: Decimal, as_of: datetime, source: str) -> ExchangeRate:
        return ExchangeRate(
            base=base,
            quote=quote,
            rate=value,
            as_of=as_of,
            source=source,
            deposit_spread=self.pricing.deposit_spread,
            payout_spread=self.pricing.payout_spread,
        )

    def _with_spreads(self, rate: ExchangeRate) -> ExchangeRate:
        return replace(
            rate,
            deposit_spread=self.pricing.deposit_spread,
            payout_spread=self.pricing.payout_spread,
        )


# Global instance
_exchange_rate_service: Optional[ExchangeRateService] = None


def get_exchange_rate_service() -> ExchangeRateService:
    global _exchange_rate_service
    if _exchange_rate_service is None:
        _exchange_rate_service = ExchangeRateService()
    return _exchange_rate_service
