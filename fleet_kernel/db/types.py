"""
Module: fleet_kernel.db.types
Responsibility: Precision constants for persisted numbers and the single
    coercion path from actor input to Decimal.
Architecture position: Kernel > DB.  Imported by services; imports nothing
    from the kernel.

Invariants enforced:
    No float reaches a Numeric column.  Floats are read through their
    string form and NaN/Infinity never get past to_decimal().
"""

from decimal import Decimal, InvalidOperation

# Numeric(38, 9): costs, part prices
MONEY_DECIMAL_PLACES = 9

# Numeric(18, 4): labor hours
QUANTITY_DECIMAL_PLACES = 4


def to_decimal(value: Decimal | int | str | float) -> Decimal:
    """
    Read an actor-supplied number as a finite Decimal.

    ``0.1`` becomes ``Decimal("0.1")``, not its binary expansion.  Booleans
    are refused even though ``bool`` is an ``int``.

    Raises:
        ValueError: not a number, or not finite.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result
