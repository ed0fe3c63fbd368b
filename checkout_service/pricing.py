"""
pricing.py — Pricing Engine

Pure functions computing per-item and per-order monetary totals.

All arithmetic is done in `decimal.Decimal` and every output is rounded to
2 decimal places with ROUND_HALF_UP (0.005 -> 0.01). Summing 2-place decimals
is exact, so order totals do not depend on item order.

Tax convention:
    `taxRate` is a MULTIPLIER string, not a percentage: "1.20" means 20% tax,
    "1.0" means no tax. Malformed or negative multipliers degrade to 1.0;
    an item is never rejected because of its tax metadata.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, Overflow, getcontext, localcontext
from typing import Any, Iterable, Optional, Union

from .models import OrderTotals

log = logging.getLogger(__name__)

CENT = Decimal("0.01")
NO_TAX = Decimal("1.0")

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class ItemTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def _lenient_context():
    """
    Decimal context where invalid or overflowing operations yield NaN or
    Infinity instead of raising; round_money turns both into 0.00.
    """
    context = getcontext().copy()
    context.traps[InvalidOperation] = False
    context.traps[Overflow] = False
    return localcontext(context)


def round_money(value: Decimal) -> Decimal:
    """
    Rounds to cents (half-up). Non-finite values (NaN, Infinity) and values
    too wide to hold at cent precision become 0.00.
    """
    with _lenient_context():
        rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    if not rounded.is_finite():
        return Decimal("0.00")
    return rounded


def parse_tax_multiplier(tax_rate: Optional[str]) -> Decimal:
    """
    Parses a tax multiplier string.

    Returns 1.0 (zero tax) when the string is missing, not a number,
    not finite, or negative.
    """
    if tax_rate is None:
        return NO_TAX
    try:
        multiplier = Decimal(str(tax_rate).strip())
    except InvalidOperation:
        log.warning(f"Invalid taxRate {tax_rate!r}, falling back to {NO_TAX} (no tax).")
        return NO_TAX
    if not multiplier.is_finite() or multiplier < 0:
        log.warning(f"Unusable taxRate {tax_rate!r}, falling back to {NO_TAX} (no tax).")
        return NO_TAX
    return multiplier


def _to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps floats like 0.1 from dragging binary noise into the result
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("NaN")


def compute_item_totals(
        base_price: Number,
        quantity: int,
        discount_rate: Optional[Number],
        tax_rate: Optional[str]
) -> ItemTotals:
    """
    Computes subtotal, tax and total for one order line.

    Args:
        base_price: Unit price in major currency units (e.g. 49.99).
        quantity: Number of units.
        discount_rate: Percentage discount in [0, 100], or None.
        tax_rate: Tax multiplier string (e.g. "1.08" for 8% tax).

    Returns:
        ItemTotals: Each field independently rounded to 2 decimals.
    """
    price = _to_decimal(base_price)
    rate = _to_decimal(discount_rate)
    multiplier = parse_tax_multiplier(tax_rate)

    with _lenient_context():
        discounted = price * (1 - rate / 100)
        subtotal = discounted * quantity
        tax = subtotal * (multiplier - 1)
        total = subtotal + tax

    return ItemTotals(
        subtotal=round_money(subtotal),
        tax=round_money(tax),
        total=round_money(total),
    )


def _line_value(item: Any, name: str) -> Decimal:
    value = item.get(name) if isinstance(item, dict) else getattr(item, name, None)
    return _to_decimal(value)


def compute_order_totals(items: Iterable[Any], currency: str) -> OrderTotals:
    """
    Sums the line totals of an order.

    Items may be OrderItem models, ItemTotals or plain dicts; a missing
    subtotal/tax/total counts as 0.

    Args:
        items: The order lines.
        currency: ISO 4217 code of the order (single currency per order).

    Returns:
        OrderTotals: Sums rounded to 2 decimals.
    """
    subtotal = tax = total = Decimal(0)
    for item in items:
        subtotal += _line_value(item, "subtotal")
        tax += _line_value(item, "tax")
        total += _line_value(item, "total")

    return OrderTotals(
        subtotal=round_money(subtotal),
        tax=round_money(tax),
        total=round_money(total),
        currency=currency,
    )
