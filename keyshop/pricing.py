"""
Currency arithmetic for checkout totals.

Amounts are ``Decimal`` rounded half-up to cents at each point of
computation: subtotal, discount, tax and total are rounded independently and
never re-rounded after being combined.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, str]


def to_money(value: Number) -> Decimal:
    """Round a value to whole cents (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    rate: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax": self.tax,
            "total": self.total,
        }


def discount_for(subtotal: Decimal, percent_off: Number) -> Decimal:
    """Discount amount for a percentage code, rounded to cents."""
    return to_money(subtotal * Decimal(str(percent_off)) / Decimal(100))


def compute_totals(subtotal: Number, discount: Number, rate: Number) -> Totals:
    """
    Compute the order totals.

    Args:
        subtotal: Sum of line amounts
        discount: Discount amount already rounded to cents
        rate: Tax rate as a fraction (0.08 for 8%)

    Returns:
        Totals with ``total = (subtotal - discount) + tax``
    """
    subtotal = to_money(subtotal)
    discount = to_money(discount)
    rate = Decimal(str(rate))
    after_discount = subtotal - discount
    tax = to_money(after_discount * rate)
    total = to_money(after_discount + tax)
    return Totals(subtotal=subtotal, discount=discount, tax=tax, total=total, rate=rate)
