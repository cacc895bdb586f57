from __future__ import annotations

from decimal import Decimal, InvalidOperation, getcontext, ROUND_HALF_UP
from typing import Optional, Union

# Wallet and prize pool arithmetic.
getcontext().prec = 28
getcontext().rounding = ROUND_HALF_UP

NumberLike = Union[str, float, int, Decimal]


def D(value: NumberLike) -> Decimal:
    """Safe Decimal constructor using string conversion to avoid float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def q_money(value: NumberLike) -> Decimal:
    return D(value).quantize(Decimal("0.01"))


def q_money_or_none(value: Optional[NumberLike]) -> Optional[Decimal]:
    if value is None:
        return None
    return q_money(value)


def parse_number(value) -> Optional[Decimal]:
    """
    Parse a JSON-ish scalar into a finite Decimal.

    Booleans, blanks, NaN and infinities are rejected (None).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    if not isinstance(value, (str, int, float, Decimal)):
        return None
    try:
        out = D(value)
    except (InvalidOperation, ValueError):
        return None
    if not out.is_finite():
        return None
    return out
