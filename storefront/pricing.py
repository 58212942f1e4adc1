"""
Order totals: subtotal, tax, shipping and grand total for a set of line items.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from storefront.config import Config
from storefront.models import LineItem, Totals


def calculate_totals(line_items: Iterable[LineItem]) -> Totals:
    """
    Compute totals for resolved line items.

    Line items whose product no longer exists are skipped. An empty list is
    not an error: subtotal 0 still pays the flat shipping fee.
    """
    subtotal = Decimal("0")
    for item in line_items:
        if not item.is_resolved:
            continue
        subtotal += item.line_total

    tax = subtotal * Config.TAX_RATE
    shipping = Decimal("0") if subtotal > Config.FREE_SHIPPING_THRESHOLD else Config.SHIPPING_FEE
    total = subtotal + tax + shipping

    return Totals(subtotal=subtotal, tax=tax, shipping=shipping, total=total)


def to_minor_units(amount: Decimal) -> int:
    """Convert an amount to the gateway's minor currency unit (paise, cents)"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
