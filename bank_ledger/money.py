"""
Monetary Amount Handling

Amounts are Decimal values with two fractional digits, rounded half-up.
NEVER uses float for monetary values; floats are converted through str().
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import InvalidAmount, InvalidInput

getcontext().prec = 28

PRECISION = 2
QUANTUM = Decimal('0.1') ** PRECISION
ZERO = Decimal('0').quantize(QUANTUM)

AmountLike = Union[Decimal, int, float, str]


def quantize(amount: Decimal) -> Decimal:
    """Round a Decimal to ledger precision"""
    return amount.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a raw amount to a Decimal without range checks.

    Raises:
        InvalidInput: If the value is missing or not numeric
    """
    if value is None or isinstance(value, bool):
        raise InvalidInput("Amount is required")

    if isinstance(value, Decimal):
        return value

    if isinstance(value, (int, float)):
        return Decimal(str(value))

    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise InvalidInput(f"Amount {value!r} is not a number")

    raise InvalidInput(f"Unsupported amount type: {type(value).__name__}")


def parse_amount(value: AmountLike) -> Decimal:
    """
    Parse and validate a transaction amount.

    Args:
        value: Decimal, int, float or numeric string

    Returns:
        Strictly positive Decimal rounded to ledger precision

    Raises:
        InvalidInput: If the value is missing or not numeric
        InvalidAmount: If the value is non-finite or not positive after rounding
    """
    amount = to_decimal(value)

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {amount}")

    try:
        amount = quantize(amount)
    except InvalidOperation:
        raise InvalidAmount(f"Amount {amount} exceeds supported precision")

    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be positive, got {amount}")

    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display and JSON payloads"""
    return f"{quantize(amount):.{PRECISION}f}"
