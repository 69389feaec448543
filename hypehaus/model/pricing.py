"""Order total computation.

Each step is rounded on its own, half-up, on integer minor units, so the
numbers match what the checkout page shows line by line:

    subtotal = price * quantity
    fee      = round(subtotal * fee_rate)
    tax      = round(fee * tax_rate)
    total    = subtotal + fee + tax
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from .domain import PriceQuote

Rate = Union[Decimal, str, int, float]


def _as_decimal(rate: Rate) -> Decimal:
    # str() first so 0.02 stays 0.02 instead of its binary expansion
    if isinstance(rate, Decimal):
        return rate
    return Decimal(str(rate))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def quote(
    price_minor_units: int,
    quantity: int,
    fee_rate: Rate,
    tax_rate: Rate,
    currency: str,
) -> PriceQuote:
    if price_minor_units < 0:
        raise ValueError("price must not be negative")
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    subtotal = price_minor_units * quantity
    fee = round_half_up(Decimal(subtotal) * _as_decimal(fee_rate))
    tax = round_half_up(Decimal(fee) * _as_decimal(tax_rate))
    return PriceQuote(
        subtotal=subtotal,
        fee=fee,
        tax=tax,
        total=subtotal + fee + tax,
        currency=currency,
    )
