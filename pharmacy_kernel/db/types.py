"""
Module: pharmacy_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for monetary and
    quantity columns.  Centralizes precision so that every model and service
    uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the kernel.  Prices, totals, discounts and
      credit balances are Decimal with two decimal places.
    - round_money() is the only sanctioned rounding function for
      monetary values.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String

# Currency amount, two decimal places
Money = Annotated[Decimal, Numeric(18, 2)]

# Whole units of stock (tablets, vials, packs)
Quantity = Annotated[int, BigInteger]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for notes
LongText = Annotated[str, String(2000)]


MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0.00")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the ONLY sanctioned rounding function for monetary values in
    the kernel.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_money(value: Decimal | int | str) -> Decimal:
    """
    Coerce a request value into a rounded Decimal amount.

    Floats are rejected: they cannot represent most currency amounts exactly.

    Raises:
        TypeError: If value is a float.
        ValueError: If value is not numeric.
    """
    if isinstance(value, float):
        raise TypeError("Monetary amounts must not be floats")
    try:
        return round_money(Decimal(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
