from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal

from tradeledger.domain.delivery import parse_delivery_payload
from tradeledger.domain.models import (
    RawTransaction,
    TradeRecord,
    TransactionType,
    normalize_token,
    parse_decimal_or_default,
)
from tradeledger.domain.money_policy import format_decimal

_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")


def _read_str(entry: dict[str, object], name: str) -> str:
    value = entry.get(name)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Decimal):
        return format(value, "f")
    return json.dumps(value)


def _read_decimal(entry: dict[str, object], *names: str) -> Decimal | None:
    for name in names:
        value = entry.get(name)
        if value is None or isinstance(value, bool):
            continue
        parsed = parse_decimal_or_default(value, default=None)
        if parsed is not None:
            return parsed
    return None


def read_timestamp_ms(entry: dict[str, object], name: str = "transactionTime") -> int:
    value = entry.get(name)
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    raw = str(value).strip()
    if not raw:
        return 0
    if raw.lstrip("-").isdigit():
        return int(raw)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = None
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)


def _category(entry: dict[str, object], category_fallback: str) -> str:
    return _read_str(entry, "category") or category_fallback


def is_spot_trade(entry: dict[str, object], category_fallback: str) -> bool:
    return (
        _category(entry, category_fallback).lower() == "spot"
        and normalize_token(_read_str(entry, "type")) == TransactionType.TRADE
    )


def build_unique_key(entry: dict[str, object], category_fallback: str) -> str:
    raw_id = _read_str(entry, "id")
    if raw_id.strip():
        return raw_id

    timestamp = read_timestamp_ms(entry)
    qty = _read_str(entry, "qty")
    fee = _read_str(entry, "fee")
    currency = _read_str(entry, "currency")
    side = _read_str(entry, "side")
    order_id = _read_str(entry, "orderId")
    if order_id.strip():
        return f"{order_id}|{timestamp}|{qty}|{fee}|{currency}|{side}"

    return "|".join(
        (
            _read_str(entry, "type"),
            _read_str(entry, "symbol"),
            str(timestamp),
            qty,
            _read_str(entry, "tradePrice"),
            fee,
            currency,
            _category(entry, category_fallback),
            side,
        )
    )


def grouping_key(entry: dict[str, object], category_fallback: str) -> str:
    """Spot fills arrive as a base leg and a quote leg; both legs share this key."""
    if not is_spot_trade(entry, category_fallback):
        return build_unique_key(entry, category_fallback)

    timestamp = read_timestamp_ms(entry)
    symbol = _read_str(entry, "symbol")
    side = _read_str(entry, "side")
    order_id = _read_str(entry, "orderId")
    if order_id.strip():
        return f"spot|{order_id}|{timestamp}|{symbol}|{side}"
    trade_id = _read_str(entry, "tradeId")
    if trade_id.strip():
        return f"spot|{trade_id}|{timestamp}|{symbol}|{side}"
    return f"spot|{symbol}|{timestamp}|{side}"


def map_transaction(entry: dict[str, object], category_fallback: str) -> RawTransaction:
    qty = _read_decimal(entry, "qty", "size")
    return RawTransaction(
        unique_key=build_unique_key(entry, category_fallback),
        timestamp=read_timestamp_ms(entry),
        symbol=_read_str(entry, "symbol"),
        category=_category(entry, category_fallback),
        transaction_type=_read_str(entry, "type"),
        side=_read_str(entry, "side"),
        qty=qty if qty is not None else Decimal("0"),
        price=_read_decimal(entry, "tradePrice") or Decimal("0"),
        fee=_read_decimal(entry, "fee") or Decimal("0"),
        currency=_read_str(entry, "currency"),
        change=_read_decimal(entry, "change"),
        cash_flow=_read_decimal(entry, "cashFlow"),
        order_id=_read_str(entry, "orderId") or None,
        order_link_id=_read_str(entry, "orderLinkId") or None,
        trade_id=_read_str(entry, "tradeId") or None,
        raw_json=json.dumps(entry, default=str, separators=(",", ":")),
    )


def map_spot_trade(entries: list[dict[str, object]], category_fallback: str) -> RawTransaction:
    primary = entries[0]
    symbol = _read_str(primary, "symbol")
    side = _read_str(primary, "side")
    order_id = _read_str(primary, "orderId")
    timestamp = read_timestamp_ms(primary)
    trade_price_text = _read_str(primary, "tradePrice")
    trade_price = _read_decimal(primary, "tradePrice") or Decimal("0")

    currencies: list[str] = []
    for entry in entries:
        currency = _read_str(entry, "currency").strip()
        if currency and currency.upper() not in {known.upper() for known in currencies}:
            currencies.append(currency)

    symbol_upper = symbol.upper()
    quote = next((cur for cur in currencies if symbol and symbol_upper.endswith(cur.upper())), "")
    if not quote and len(currencies) == 1:
        quote = currencies[0]
    base = next((cur for cur in currencies if cur.upper() != quote.upper()), None)
    if base is None:
        base = currencies[0] if currencies else ""

    base_leg = next(
        (entry for entry in entries if _read_str(entry, "currency").upper() == base.upper()), None
    )
    base_qty = abs(_read_decimal(base_leg, "qty") or Decimal("0")) if base_leg else Decimal("0")

    fee_total = Decimal("0")
    for entry in entries:
        fee = _read_decimal(entry, "fee") or Decimal("0")
        if fee == 0:
            continue
        fee_currency = _read_str(entry, "currency").upper()
        if fee_currency == quote.upper():
            fee_total += fee
        elif fee_currency == base.upper():
            fee_total += fee * trade_price

    if order_id.strip():
        unique_key = f"{order_id}|{timestamp}|{symbol}|{side}"
    else:
        unique_key = (
            f"{symbol}|{timestamp}|{side}|{trade_price_text}|{format_decimal(base_qty)}|{quote}"
        )

    return RawTransaction(
        unique_key=unique_key,
        timestamp=timestamp,
        symbol=symbol,
        category="spot",
        transaction_type=_read_str(primary, "type"),
        side=side,
        qty=base_qty,
        price=trade_price,
        fee=fee_total,
        currency=quote,
        change=None,
        cash_flow=None,
        order_id=order_id or None,
        order_link_id=_read_str(primary, "orderLinkId") or None,
        trade_id=_read_str(primary, "tradeId") or None,
        raw_json=json.dumps(entries, default=str, separators=(",", ":")),
    )


def map_transaction_items(items: list[object], category_fallback: str) -> list[RawTransaction]:
    """Group raw list items (merging spot legs) and map them in first-seen order."""
    grouped: dict[str, list[dict[str, object]]] = {}
    order: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        key = grouping_key(item, category_fallback).casefold()
        bucket = grouped.get(key)
        if bucket is None:
            bucket = []
            grouped[key] = bucket
            order.append(key)
        bucket.append(item)

    mapped: list[RawTransaction] = []
    for key in order:
        entries = grouped[key]
        if is_spot_trade(entries[0], category_fallback):
            mapped.append(map_spot_trade(entries, category_fallback))
        else:
            mapped.append(map_transaction(entries[0], category_fallback))
    return mapped


def to_trade_record(raw: RawTransaction) -> TradeRecord:
    delivery = None
    if normalize_token(raw.transaction_type) == TransactionType.DELIVERY:
        delivery = parse_delivery_payload(raw.raw_json).details
    return TradeRecord(
        id=raw.unique_key,
        timestamp=raw.timestamp,
        symbol=raw.symbol,
        category=raw.category,
        transaction_type=raw.transaction_type,
        side=raw.side,
        size=raw.qty,
        price=raw.price,
        fee=raw.fee,
        currency=raw.currency,
        change=raw.change,
        cash_flow=raw.cash_flow,
        order_id=raw.order_id,
        order_link_id=raw.order_link_id,
        trade_id=raw.trade_id,
        raw_json=raw.raw_json,
        delivery=delivery,
    )
