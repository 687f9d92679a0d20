# coding: utf-8
"""
Address unlock fee calculation

Pure functions. The amount a guest is charged is always computed here from
the property's monthly price; client-submitted amounts are never used.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from config.unlock_pricing import DEFAULT_PRICING, UnlockPricing
from src.core.exceptions import MethodNotSupported
from src.database.models import UnlockPaymentMethod


WHOLE = Decimal("1")
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class UnlockFee:
    method: UnlockPaymentMethod
    amount_local: int
    amount_usd: Decimal
    exchange_rate: Decimal
    price_per_month: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_method": self.method.value,
            "amount_local": self.amount_local,
            "amount_usd": float(self.amount_usd),
            "exchange_rate": float(self.exchange_rate),
            "price_per_month": float(self.price_per_month),
        }


def require_monthly_price(price_per_month: Optional[Decimal]) -> Decimal:
    if price_per_month is None or Decimal(price_per_month) <= 0:
        raise MethodNotSupported(
            "Address unlock is only available for properties with a monthly price"
        )
    return Decimal(price_per_month)


def calculate_unlock_fee(
    price_per_month: Optional[Decimal],
    method: UnlockPaymentMethod,
    exchange_rate: Decimal,
    pricing: UnlockPricing = DEFAULT_PRICING,
) -> UnlockFee:
    """
    Compute the unlock charge

    non_refundable_fee:
        8,000 local units below $300/month, 15,000 at or above.
    three_month_30_percent:
        round(price_per_month x 1.14 x 3 x 0.30 x rate), USD rounded to cents.

    Args:
        price_per_month: Property monthly price in USD (None for nightly-only)
        method: Unlock payment method
        exchange_rate: USD -> local base rate

    Raises:
        MethodNotSupported: property has no monthly price
    """
    monthly = require_monthly_price(price_per_month)
    rate = Decimal(exchange_rate)
    method = UnlockPaymentMethod(method)

    if method == UnlockPaymentMethod.NON_REFUNDABLE_FEE:
        if monthly < pricing.fee_tier_threshold_usd:
            amount_local = pricing.fee_below_threshold
        else:
            amount_local = pricing.fee_at_or_above_threshold
        amount_usd = (Decimal(amount_local) / rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    else:
        fee_usd = monthly * pricing.tax_multiplier * pricing.deposit_months * pricing.deposit_share
        amount_local = int((fee_usd * rate).quantize(WHOLE, rounding=ROUND_HALF_UP))
        amount_usd = fee_usd.quantize(CENTS, rounding=ROUND_HALF_UP)

    return UnlockFee(
        method=method,
        amount_local=amount_local,
        amount_usd=amount_usd,
        exchange_rate=rate,
        price_per_month=monthly,
    )


def calculate_fee_breakdown(
    price_per_month: Optional[Decimal],
    exchange_rate: Decimal,
    pricing: UnlockPricing = DEFAULT_PRICING,
) -> Dict[str, Any]:
    """
    Both unlock methods side by side with a recommendation

    The deposit method is recommended once it is worth more than
    `recommend_deposit_above_usd`, since it later counts toward a booking.
    """
    fees = {
        method: calculate_unlock_fee(price_per_month, method, exchange_rate, pricing)
        for method in UnlockPaymentMethod
    }
    deposit = fees[UnlockPaymentMethod.THREE_MONTH_30_PERCENT]

    if deposit.amount_usd > pricing.recommend_deposit_above_usd:
        recommended = UnlockPaymentMethod.THREE_MONTH_30_PERCENT
    else:
        recommended = UnlockPaymentMethod.NON_REFUNDABLE_FEE

    return {
        "price_per_month": float(deposit.price_per_month),
        "exchange_rate": float(Decimal(exchange_rate)),
        "methods": {method.value: fee.to_dict() for method, fee in fees.items()},
        "recommended_method": recommended.value,
        "refundable_on_cancel": {
            UnlockPaymentMethod.NON_REFUNDABLE_FEE.value: False,
            UnlockPaymentMethod.THREE_MONTH_30_PERCENT.value: True,
        },
        "service_fee_local": pricing.service_fee,
    }


def calculate_refund(paid_amount_local: Decimal, pricing: UnlockPricing = DEFAULT_PRICING) -> Decimal:
    """Refund owed on cancelling a 30% unlock: paid minus service fee, floored at 0"""
    return max(Decimal("0"), Decimal(paid_amount_local) - pricing.service_fee)
