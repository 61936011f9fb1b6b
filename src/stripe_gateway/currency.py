"""Currency helpers: minor unit conversion and Stripe minimum charge amounts."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

# Currencies Stripe charges in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

# Minimum charge amount per currency, in minor units.
MINIMUM_CHARGE_AMOUNTS = {
    "USD": 50,
    "AED": 200,
    "AUD": 50,
    "BGN": 100,
    "BRL": 50,
    "CAD": 50,
    "CHF": 50,
    "CZK": 1500,
    "DKK": 250,
    "EUR": 50,
    "GBP": 30,
    "HKD": 400,
    "HUF": 17500,
    "INR": 50,
    "JPY": 50,
    "MXN": 1000,
    "MYR": 200,
    "NOK": 300,
    "NZD": 50,
    "PLN": 200,
    "RON": 200,
    "SEK": 300,
    "SGD": 50,
    "THB": 1000,
}


def is_zero_decimal(currency: str) -> bool:
    return currency.upper() in ZERO_DECIMAL_CURRENCIES


def to_minor_units(amount: Union[Decimal, str, int, float], currency: str) -> int:
    """
    Convert a major unit amount (e.g. "12.00") to the integer Stripe expects.

    Args:
        amount: Amount in major units.
        currency: Three-letter currency code.

    Returns:
        Amount in minor units, rounded half up.
    """
    value = Decimal(str(amount))
    if not is_zero_decimal(currency):
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_minimum_charge_amount(currency: str) -> Optional[int]:
    """Minimum charge in minor units, or None for currencies without a documented minimum."""
    if not currency:
        return None
    return MINIMUM_CHARGE_AMOUNTS.get(currency.upper())
