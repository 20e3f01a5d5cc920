from __future__ import annotations

from decimal import Decimal

from tradeledger.domain.money_policy import (
    MoneyMathPolicy,
    format_decimal,
    is_flat,
    round10,
)


def test_round10_rounds_half_up_at_ten_digits() -> None:
    assert round10(Decimal("0.00000000005")) == Decimal("0.0000000001")
    assert round10(Decimal("-0.00000000005")) == Decimal("-0.0000000001")
    assert round10(Decimal("1.00000000004")) == Decimal("1.0000000000")


def test_round10_quantizes_to_policy_rounding_epsilon() -> None:
    policy = MoneyMathPolicy(rounding_epsilon=Decimal("0.01"))

    assert round10(Decimal("2.345"), policy) == Decimal("2.35")


def test_is_flat_uses_position_epsilon() -> None:
    assert is_flat(Decimal("0.0000000009"))
    assert not is_flat(Decimal("0.000000001"))


def test_format_decimal_strips_trailing_zeros() -> None:
    assert format_decimal(Decimal("120.5000000000")) == "120.5"
    assert format_decimal(Decimal("0E-10")) == "0"
