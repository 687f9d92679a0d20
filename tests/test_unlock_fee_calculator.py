"""
Unit tests for unlock fee calculation
"""

import pytest
from decimal import Decimal

from config.unlock_pricing import UnlockPricing
from src.core.exceptions import MethodNotSupported
from src.database.models import UnlockPaymentMethod
from src.services.unlock_fee_calculator import (
    calculate_fee_breakdown,
    calculate_refund,
    calculate_unlock_fee,
)


RATE = Decimal("1300")


@pytest.mark.parametrize(
    "monthly, expected",
    [
        (Decimal("250"), 8000),
        (Decimal("299.99"), 8000),
        (Decimal("300"), 15000),
        (Decimal("1200"), 15000),
    ],
)
def test_non_refundable_fee_tiers(monthly, expected):
    fee = calculate_unlock_fee(monthly, UnlockPaymentMethod.NON_REFUNDABLE_FEE, RATE)

    assert fee.amount_local == expected
    assert fee.method == UnlockPaymentMethod.NON_REFUNDABLE_FEE


def test_non_refundable_fee_usd_equivalent():
    fee = calculate_unlock_fee(Decimal("250"), UnlockPaymentMethod.NON_REFUNDABLE_FEE, RATE)

    assert fee.amount_usd == Decimal("6.15")  # 8000 / 1300
    assert fee.exchange_rate == RATE


def test_three_month_deposit():
    """250 x 1.14 x 3 x 0.30 = 256.50 USD"""
    fee = calculate_unlock_fee(Decimal("250"), UnlockPaymentMethod.THREE_MONTH_30_PERCENT, RATE)

    assert fee.amount_usd == Decimal("256.50")
    assert fee.amount_local == 333450


def test_three_month_deposit_rounds_half_up():
    # 101 x 1.14 x 3 x 0.30 = 103.626 USD -> x 1000.5 = 103677.813
    fee = calculate_unlock_fee(
        Decimal("101"), UnlockPaymentMethod.THREE_MONTH_30_PERCENT, Decimal("1000.5")
    )

    assert fee.amount_local == 103678
    assert fee.amount_usd == Decimal("103.63")


def test_method_accepts_string_values():
    fee = calculate_unlock_fee(Decimal("500"), "three_month_30_percent", RATE)

    assert fee.method == UnlockPaymentMethod.THREE_MONTH_30_PERCENT
    assert fee.amount_local == 666900


@pytest.mark.parametrize("monthly", [None, Decimal("0"), Decimal("-5")])
@pytest.mark.parametrize("method", list(UnlockPaymentMethod))
def test_nightly_only_properties_rejected(monthly, method):
    with pytest.raises(MethodNotSupported):
        calculate_unlock_fee(monthly, method, RATE)


def test_custom_pricing():
    pricing = UnlockPricing(fee_below_threshold=5000, fee_tier_threshold_usd=Decimal("100"))

    assert calculate_unlock_fee(Decimal("99"), UnlockPaymentMethod.NON_REFUNDABLE_FEE, RATE, pricing).amount_local == 5000
    assert calculate_unlock_fee(Decimal("100"), UnlockPaymentMethod.NON_REFUNDABLE_FEE, RATE, pricing).amount_local == 15000


@pytest.mark.parametrize(
    "paid, expected",
    [
        (Decimal("333450"), Decimal("318450")),
        (Decimal("15000"), Decimal("0")),
        (Decimal("9000"), Decimal("0")),
        (Decimal("0"), Decimal("0")),
    ],
)
def test_refund_keeps_service_fee(paid, expected):
    assert calculate_refund(paid) == expected


def test_fee_breakdown_recommends_deposit_for_expensive_properties():
    breakdown = calculate_fee_breakdown(Decimal("250"), RATE)

    assert breakdown["recommended_method"] == "three_month_30_percent"
    assert breakdown["methods"]["non_refundable_fee"]["amount_local"] == 8000
    assert breakdown["methods"]["three_month_30_percent"]["amount_local"] == 333450
    assert breakdown["refundable_on_cancel"]["three_month_30_percent"] is True
    assert breakdown["refundable_on_cancel"]["non_refundable_fee"] is False
    assert breakdown["service_fee_local"] == 15000


def test_fee_breakdown_recommends_flat_fee_for_cheap_properties():
    # 80 x 1.14 x 3 x 0.30 = 82.08 USD
    breakdown = calculate_fee_breakdown(Decimal("80"), RATE)

    assert breakdown["recommended_method"] == "non_refundable_fee"
