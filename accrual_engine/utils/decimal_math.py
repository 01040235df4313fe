"""Fixed-point money arithmetic.

All amounts are ``Decimal`` quantized to 8 places with ROUND_HALF_UP. Inputs
may be Decimal, int, float or numeric strings; floats go through ``str()`` so
``0.1`` becomes ``Decimal("0.1")`` rather than its binary expansion.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Union

from accrual_engine.exceptions import DivisionByZeroError

Number = Union[Decimal, int, float, str, None]

PLACES = 8
QUANT = Decimal(1).scaleb(-PLACES)  # 0.00000001
ZERO = Decimal("0").quantize(QUANT)
HUNDRED = Decimal(100)


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without rounding. ``None`` and ``""`` are zero."""
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("boolean is not a monetary amount")
    if isinstance(value, str) and not value.strip():
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a numeric amount: {value!r}") from exc


def quantize(value: Number) -> Decimal:
    return to_decimal(value).quantize(QUANT, rounding=ROUND_HALF_UP)


def add(a: Number, b: Number) -> Decimal:
    return quantize(to_decimal(a) + to_decimal(b))


def subtract(a: Number, b: Number) -> Decimal:
    return quantize(to_decimal(a) - to_decimal(b))


def multiply(a: Number, b: Number) -> Decimal:
    return quantize(to_decimal(a) * to_decimal(b))


def divide(a: Number, b: Number) -> Decimal:
    divisor = to_decimal(b)
    if divisor == 0:
        raise DivisionByZeroError(a)
    return quantize(to_decimal(a) / divisor)


def percentage(value: Number, percent: Number) -> Decimal:
    """``value * percent / 100`` (percent expressed as 0..100)."""
    return quantize(to_decimal(value) * to_decimal(percent) / HUNDRED)


def sum_amounts(values: Iterable[Number]) -> Decimal:
    total = Decimal(0)
    for v in values:
        total += to_decimal(v)
    return quantize(total)


def min_amount(*values: Number) -> Decimal:
    if not values:
        raise ValueError("min_amount() requires at least one value")
    return quantize(min(to_decimal(v) for v in values))


def max_amount(*values: Number) -> Decimal:
    if not values:
        raise ValueError("max_amount() requires at least one value")
    return quantize(max(to_decimal(v) for v in values))


def daily_benefit(principal: Number, daily_rate: Number) -> Decimal:
    """principal x rate, the amount credited once per accrual day."""
    return multiply(principal, daily_rate)


def commission_amount(base: Number, rate: Number) -> Decimal:
    return multiply(base, rate)


def is_positive(value: Number) -> bool:
    return quantize(value) > 0


def to_str(value: Number) -> str:
    """Fixed 8-place string, used for JSON payloads."""
    return format(quantize(value), "f")


__all__ = [
    "PLACES",
    "QUANT",
    "ZERO",
    "to_decimal",
    "quantize",
    "add",
    "subtract",
    "multiply",
    "divide",
    "percentage",
    "sum_amounts",
    "min_amount",
    "max_amount",
    "daily_benefit",
    "commission_amount",
    "is_positive",
    "to_str",
]
