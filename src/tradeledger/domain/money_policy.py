from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class MoneyMathPolicy:
    """Canonical decimal policy shared by replay, reporting, and persistence paths."""

    rounding: str = ROUND_HALF_UP
    position_epsilon: Decimal = Decimal("1e-9")
    rounding_epsilon: Decimal = Decimal("1e-10")


DEFAULT_MONEY_POLICY = MoneyMathPolicy()

ZERO = Decimal("0")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round10(value: Decimal, policy: MoneyMathPolicy = DEFAULT_MONEY_POLICY) -> Decimal:
    return to_decimal(value).quantize(policy.rounding_epsilon, rounding=policy.rounding)


def sign(value: Decimal) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def is_flat(position: Decimal, policy: MoneyMathPolicy = DEFAULT_MONEY_POLICY) -> bool:
    return abs(position) < policy.position_epsilon


def format_decimal(value: Decimal) -> str:
    if value == 0:
        return "0"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
