"""Utilities for working with won amounts in MoneySeed."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .exceptions import ValidationError

MAX_AMOUNT = 1_000_000

AmountLike = Union[Decimal, int, float, str]


def to_amount(value: AmountLike) -> int:
    """Convert ``value`` to a whole number of won."""

    if isinstance(value, bool):
        raise ValidationError("Amount must be a number.")
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(str(value))
        elif isinstance(value, str):
            result = Decimal(value.replace(",", "").strip())
        else:
            raise ValidationError(f"Unsupported amount type: {type(value)!r}")
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return int(result.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def require_positive(amount: int, *, allow_zero: bool = False, maximum: int | None = MAX_AMOUNT) -> int:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < 0:
            raise ValidationError("Amount must be zero or greater.")
    elif amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    if maximum is not None and amount > maximum:
        raise ValidationError(f"Amount must not exceed {format_currency(maximum)}.")
    return amount


def format_currency(amount: int) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``₩1,000``)."""

    sign = "-" if amount < 0 else ""
    return f"{sign}₩{abs(amount):,}"


__all__ = ["AmountLike", "MAX_AMOUNT", "format_currency", "require_positive", "to_amount"]
