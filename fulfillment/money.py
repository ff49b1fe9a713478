"""Currency amount normalisation"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

# ISO 4217 currencies whose minor unit is not 1/100
_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}

Amount = Union[int, float, str, Decimal]


def currency_exponent(currency: str) -> int:
    return _EXPONENTS.get((currency or "USD").upper(), 2)


def to_minor_units(amount: Amount, currency: str = "USD") -> int:
    """Convert a major-unit amount (e.g. 12.5 USD) into minor units (1250)"""
    if amount is None:
        raise ValueError("amount is required")

    scale = Decimal(10) ** currency_exponent(currency)
    value = (Decimal(str(amount)) * scale).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(value)
