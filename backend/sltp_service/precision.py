"""
Precision handling for exchange sell orders

Exchanges reject quantities and prices that do not sit on their lot-size
step / price tick. Everything here rounds DOWN so a sell never asks for
more than the tenant holds.
"""
from decimal import ROUND_DOWN, Decimal
from typing import Union

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    """Convert via str() so floats like 0.1 do not drag binary noise along."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def floor_to_step(amount: Number, step: Number) -> Decimal:
    """
    Round an amount down to a multiple of the exchange step size.

    Args:
        amount: Quantity or price to round
        step: LOT_SIZE stepSize or PRICE_FILTER tickSize

    Returns:
        Decimal quantized to the step's exponent

    Examples:
        >>> floor_to_step(10.55, "0.1")
        Decimal('10.5')
        >>> floor_to_step(10.55, "1")
        Decimal('10')
    """
    amount_d = to_decimal(amount)
    step_d = to_decimal(step)
    if step_d <= 0:
        return amount_d

    floored = (amount_d // step_d) * step_d
    # Normalize the exponent so "1.00000000" steps give integers
    return floored.quantize(step_d.normalize(), rounding=ROUND_DOWN)


def compute_sell_quantity(held_qty: Number, quantity_fraction: Number, step: Number) -> Decimal:
    """held_qty * quantity_fraction, floored to the lot-size step."""
    raw = to_decimal(held_qty) * to_decimal(quantity_fraction)
    return floor_to_step(raw, step)


def format_amount(amount: Decimal) -> str:
    """Plain (non-scientific) string for order payloads."""
    return format(amount, "f")
