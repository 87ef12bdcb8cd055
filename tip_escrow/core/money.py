"""
Integer minor-unit money arithmetic.

All amounts are plain ``int`` pence. Nothing in here touches floats; pound
conversion exists only for presentation and operator input.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from fractions import Fraction
from typing import List, Sequence, Union

from .errors import InvalidAmount, Underflow

SUPPORTED_ROUNDING = (ROUND_HALF_UP, ROUND_DOWN)


def validate_pence(amount: int, context: str = "amount", allow_zero: bool = True) -> int:
    """Validate that an amount is a usable integer number of pence.

    Args:
        amount: Amount in pence
        context: Description used in error messages
        allow_zero: Whether zero is acceptable

    Returns:
        The validated amount

    Raises:
        InvalidAmount: If the amount is not an int, is negative, or is zero
            when zero is not allowed
    """
    # bool is an int subclass; True pence is never intended
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(
            f"Invalid {context}: must be an integer number of pence, got {amount!r}"
        )
    if amount < 0:
        raise InvalidAmount(f"Invalid {context}: cannot be negative (got {amount} pence)")
    if not allow_zero and amount == 0:
        raise InvalidAmount(f"Invalid {context}: must be greater than zero")
    return amount


def add(a: int, b: int) -> int:
    """Add two pence amounts."""
    return validate_pence(a) + validate_pence(b)


def subtract(a: int, b: int) -> int:
    """Subtract ``b`` from ``a``.

    Raises:
        Underflow: If the result would be negative
    """
    validate_pence(a)
    validate_pence(b)
    if b > a:
        raise Underflow(f"Cannot subtract {b} pence from {a} pence")
    return a - b


def multiply_by_fraction(
    amount: int,
    numerator: int,
    denominator: int,
    rounding: str = ROUND_HALF_UP,
) -> int:
    """Multiply an amount by ``numerator / denominator`` using integer maths.

    Args:
        amount: Amount in pence
        numerator: Non-negative fraction numerator
        denominator: Positive fraction denominator
        rounding: ``ROUND_HALF_UP`` (default) or ``ROUND_DOWN``

    Returns:
        The scaled amount in pence
    """
    validate_pence(amount)
    if isinstance(numerator, bool) or not isinstance(numerator, int) or numerator < 0:
        raise ValueError(f"numerator must be a non-negative integer, got {numerator!r}")
    if isinstance(denominator, bool) or not isinstance(denominator, int) or denominator <= 0:
        raise ValueError(f"denominator must be a positive integer, got {denominator!r}")
    if rounding not in SUPPORTED_ROUNDING:
        raise ValueError(f"Unsupported rounding mode: {rounding}")

    product = amount * numerator
    if rounding == ROUND_DOWN:
        return product // denominator
    return (2 * product + denominator) // (2 * denominator)


def split_shares(total: int, shares: Sequence[Fraction]) -> List[int]:
    """Split ``total`` pence across ``shares`` with the largest remainder method.

    Each share first receives ``floor(total * share)``. The pence left over are
    handed out one at a time to the shares with the largest fractional
    remainders; equal remainders go to the earlier share. The result always
    sums to ``total`` exactly.

    Args:
        total: Amount to split in pence
        shares: Exact fractions summing to 1

    Returns:
        Per-share amounts, in the order of ``shares``

    Raises:
        ValueError: If shares are empty, negative, or do not sum to 1
    """
    validate_pence(total, "split total")
    if not shares:
        raise ValueError("Cannot split an amount across zero shares")
    if any(share < 0 for share in shares):
        raise ValueError("Shares cannot be negative")
    if sum(shares, Fraction(0)) != 1:
        raise ValueError("Shares must sum to exactly 1")

    amounts = []
    remainders = []
    for share in shares:
        exact = total * Fraction(share)
        floored = exact.numerator // exact.denominator
        amounts.append(floored)
        remainders.append(exact - floored)

    leftover = total - sum(amounts)
    # Stable sort keeps list order for equal remainders
    order = sorted(range(len(shares)), key=lambda i: remainders[i], reverse=True)
    for index in order[:leftover]:
        amounts[index] += 1

    return amounts


def pounds_to_pence(pounds: Union[Decimal, str, int]) -> int:
    """Convert an operator-entered pound amount to pence.

    Floats are refused; pass a ``Decimal`` or a string such as ``"12.50"``.

    Raises:
        InvalidAmount: If the value is not a valid non-negative amount or has
            more than two decimal places
    """
    if isinstance(pounds, (bool, float)):
        raise InvalidAmount(f"Pound amounts must be Decimal or str, got {pounds!r}")
    try:
        value = Decimal(str(pounds).strip())
    except InvalidOperation:
        raise InvalidAmount(f"Invalid pound amount: {pounds!r}")
    if not value.is_finite() or value < 0:
        raise InvalidAmount(f"Invalid pound amount: {pounds!r}")

    pence = value * 100
    if pence != pence.to_integral_value():
        raise InvalidAmount(f"Pound amount has more than two decimal places: {pounds!r}")
    return int(pence)


def format_pence(amount: int) -> str:
    """Format pence for display, e.g. ``1234`` -> ``"£12.34"``."""
    sign = "-" if amount < 0 else ""
    pounds, pence = divmod(abs(amount), 100)
    return f"{sign}£{pounds:,}.{pence:02d}"
