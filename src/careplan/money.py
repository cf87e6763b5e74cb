"""Money conversion at the boundary.

Amounts are tracked internally as integer cents; decimal input is converted
exactly once when it enters the core.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import InvalidMoneyError

Money = Union[Decimal, int, float, str]

_CENT = Decimal("0.01")

# Largest magnitude a stored cents column (signed 64-bit) can hold.
MAX_CENTS = 2**63 - 1
MAX_AMOUNT = Decimal(MAX_CENTS) / 100


def to_cents(amount: Money, *, field: str = "amount") -> int:
    """Convert a decimal money amount to integer cents.

    Integers are whole currency units. Floats are read through their string
    form so ``0.1`` means ten cents rather than its binary approximation.
    Sub-cent precision is rejected instead of rounded.
    """

    if isinstance(amount, bool):
        raise InvalidMoneyError("Money amount must be numeric", field=field, value=amount)
    try:
        if isinstance(amount, Decimal):
            value = amount
        elif isinstance(amount, int):
            value = Decimal(amount)
        elif isinstance(amount, float):
            value = Decimal(repr(amount))
        elif isinstance(amount, str):
            value = Decimal(amount.strip())
        else:
            raise InvalidMoneyError("Money amount must be numeric", field=field, value=amount)
    except InvalidOperation as exc:
        raise InvalidMoneyError("Money amount is not a number", field=field, value=amount) from exc

    if not value.is_finite():
        raise InvalidMoneyError("Money amount must be finite", field=field, value=str(amount))
    if abs(value) > MAX_AMOUNT:
        raise InvalidMoneyError("Money amount is out of range", field=field, value=str(amount))
    try:
        exact = value.quantize(_CENT) == value
    except InvalidOperation as exc:
        raise InvalidMoneyError("Money amount is out of range", field=field, value=str(amount)) from exc
    if not exact:
        raise InvalidMoneyError(
            "Money amount has more than two decimal places", field=field, value=str(amount)
        )
    return int(value * 100)


def check_cents(cents: int, *, field: str = "amount") -> int:
    """Reject a cents value that would not fit the signed 64-bit storage columns."""

    if abs(cents) > MAX_CENTS:
        raise InvalidMoneyError("Money amount is out of range", field=field, value=cents)
    return cents


def from_cents(cents: int) -> Decimal:
    """Return a two-place Decimal for an integer cents value."""

    return (Decimal(cents) / 100).quantize(_CENT)


def format_cents(cents: int) -> str:
    """Human readable amount, e.g. ``-12.50``."""

    return f"{from_cents(cents):.2f}"


__all__ = ["MAX_CENTS", "Money", "check_cents", "format_cents", "from_cents", "to_cents"]
