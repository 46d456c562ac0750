"""Order total assembly."""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Tuple, Union

Amount = Union[Decimal, int, float, str]

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Amount) -> Decimal:
    """Quantize an amount to cents using half-up rounding."""
    if not isinstance(value, Decimal):
        # str() keeps floats like 0.1 from dragging binary noise into the amount
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderTotals:
    """Money components of an order, each rounded to cents."""
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal


def calculate_subtotal(lines: Iterable[Tuple[Amount, int]]) -> Decimal:
    """
    Sum unit price times quantity over cart lines.

    Args:
        lines: (unit_price, quantity) pairs

    Returns:
        Subtotal rounded to cents
    """
    subtotal = sum(
        (Decimal(str(price)) * quantity for price, quantity in lines),
        Decimal("0"),
    )
    return to_money(subtotal)


def assemble_order_totals(
    subtotal: Amount,
    discount_amount: Amount = ZERO,
    tax_amount: Amount = ZERO,
    shipping_amount: Amount = ZERO,
) -> OrderTotals:
    """
    Combine order components into a final total.

    Every component is rounded to cents first, so the stored total always
    equals subtotal - discount + tax + shipping to the cent. Inconsistent
    inputs that would produce a negative total are clamped at zero.
    """
    subtotal = to_money(subtotal)
    discount = to_money(discount_amount)
    tax = to_money(tax_amount)
    shipping = to_money(shipping_amount)

    total = to_money(subtotal - discount + tax + shipping)
    if total < ZERO:
        total = ZERO

    return OrderTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        shipping_amount=shipping,
        total_amount=total,
    )

