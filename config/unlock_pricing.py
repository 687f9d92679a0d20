"""
Pricing configuration for property address unlocks

Fee tiers are in local currency units, thresholds in USD
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal


@dataclass(frozen=True)
class UnlockPricing:
    """Business constants for the unlock fee, refunds and deal codes"""

    # Non-refundable fee tiers (local units), split on monthly price in USD
    fee_tier_threshold_usd: Decimal = Decimal("300")
    fee_below_threshold: int = 8000
    fee_at_or_above_threshold: int = 15000

    # Three-month 30% deposit
    tax_multiplier: Decimal = Decimal("1.14")
    deposit_months: int = 3
    deposit_share: Decimal = Decimal("0.30")

    # Retained on cancellation of a 30% unlock (local units)
    service_fee: int = 15000

    # Deal codes
    deal_code_validity: timedelta = timedelta(days=180)
    deal_code_initial_unlocks: int = 1

    # Exchange spreads applied on top of the mid rate
    deposit_spread: Decimal = Decimal("0.005")  # +0.5%
    payout_spread: Decimal = Decimal("0.025")  # -2.5%

    # Card gateway requires a syntactically valid phone even when none is charged
    placeholder_phone: str = "0788123456"

    # PENDING records whose gateway reports no transaction are failed after this
    pending_confirmation_grace: timedelta = timedelta(minutes=15)

    # Fee breakdown suggests the deposit method above this USD amount
    recommend_deposit_above_usd: Decimal = Decimal("100")


DEFAULT_PRICING = UnlockPricing()
