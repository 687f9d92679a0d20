# coding: utf-8
"""
Phone number normalization for payment gateways
"""
import re
from typing import Optional


RWANDA_CALLING_CODE = "250"

# Calling codes for mobile money countries (ISO2 -> code)
CALLING_CODES = {
    "RW": "250",
    "UG": "256",
    "KE": "254",
    "TZ": "255",
    "ZM": "260",
    "BF": "226",
    "BJ": "229",
    "CI": "225",
    "GH": "233",
    "SN": "221",
    "CM": "237",
}


def digits_only(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")


def to_local_format(phone: Optional[str], placeholder: str) -> str:
    """
    10-digit local number: '0' + last 9 digits

    Examples:
        >>> to_local_format("+250 788 123 456", "0788123456")
        '0788123456'
        >>> to_local_format(None, "0788123456")
        '0788123456'
    """
    digits = digits_only(phone)
    if len(digits) < 9:
        return placeholder

    local = "0" + digits[-9:]
    return local if len(local) == 10 else placeholder


def to_international_format(phone: Optional[str], calling_code: str = RWANDA_CALLING_CODE) -> str:
    """
    International digits without '+'

    Leading '0' becomes the calling code, an existing calling code is kept,
    anything else is prefixed with it.

    Examples:
        >>> to_international_format("0788123456")
        '250788123456'
        >>> to_international_format("+250788123456")
        '250788123456'
        >>> to_international_format("788123456")
        '250788123456'
    """
    digits = digits_only(phone)

    if digits.startswith(calling_code):
        return digits
    if digits.startswith("0"):
        return calling_code + digits[1:]
    return calling_code + digits


def calling_code_for(country_code: Optional[str]) -> str:
    return CALLING_CODES.get((country_code or "RW").upper(), RWANDA_CALLING_CODE)
