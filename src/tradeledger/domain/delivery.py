from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from tradeledger.domain.models import DeliveryDetails, parse_decimal_or_default

DELIVERY_PRICE_FIELDS = ("deliveryPrice", "tradePrice", "price", "execPrice")


class OptionType(StrEnum):
    CALL = "C"
    PUT = "P"


@dataclass(frozen=True)
class OptionContract:
    option_type: OptionType
    strike: Decimal | None


@dataclass(frozen=True)
class DeliveryParseResult:
    details: DeliveryDetails | None
    diagnostic: str | None = None

    @property
    def ok(self) -> bool:
        return self.diagnostic is None


def parse_option_symbol(symbol: str | None) -> OptionContract | None:
    """Return option type and strike for symbols like ``BTC-27DEC24-3000-C``.

    The strike is the dash-separated part right before the ``C``/``P`` marker.
    """
    if symbol is None or not symbol.strip():
        return None
    parts = [part for part in symbol.strip().upper().split("-") if part]
    for index, part in enumerate(parts):
        if part in {OptionType.CALL.value, OptionType.PUT.value}:
            strike = None
            if index > 0:
                strike = parse_decimal_or_default(parts[index - 1], default=None)
            return OptionContract(option_type=OptionType(part), strike=strike)
    return None


def _read_decimal(payload: dict[str, object], *names: str) -> Decimal | None:
    for name in names:
        if name not in payload:
            continue
        value = payload[name]
        if isinstance(value, bool):
            continue
        parsed = parse_decimal_or_default(value, default=None)
        if parsed is not None:
            return parsed
    return None


def parse_delivery_payload(raw_json: str | None) -> DeliveryParseResult:
    if raw_json is None or not raw_json.strip():
        return DeliveryParseResult(details=None, diagnostic="payload_missing")
    try:
        payload = json.loads(raw_json)
    except (TypeError, ValueError):
        return DeliveryParseResult(details=None, diagnostic="payload_invalid_json")

    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        return DeliveryParseResult(details=None, diagnostic="payload_not_object")

    return DeliveryParseResult(
        details=DeliveryDetails(
            position=_read_decimal(payload, "position"),
            delivery_price=_read_decimal(payload, *DELIVERY_PRICE_FIELDS),
            strike=_read_decimal(payload, "strike"),
        )
    )


def intrinsic_value(option_type: OptionType, delivery_price: Decimal, strike: Decimal) -> Decimal:
    if option_type == OptionType.CALL:
        return max(delivery_price - strike, Decimal("0"))
    return max(strike - delivery_price, Decimal("0"))
