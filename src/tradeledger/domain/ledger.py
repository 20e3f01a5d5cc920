from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from decimal import Decimal

from tradeledger.domain.delivery import intrinsic_value, parse_delivery_payload, parse_option_symbol
from tradeledger.domain.models import (
    UNKNOWN_KEY,
    Calculated,
    DeliveryDetails,
    TradeRecord,
    TradeSide,
    TransactionType,
    normalize_token,
    settle_coin_key,
)
from tradeledger.domain.money_policy import (
    DEFAULT_MONEY_POLICY,
    ZERO,
    MoneyMathPolicy,
    format_decimal,
    is_flat,
    round10,
    sign,
)


@dataclass(frozen=True)
class SymbolLedgerState:
    size: Decimal = ZERO
    avg_price: Decimal = ZERO


@dataclass(frozen=True)
class LedgerState:
    """Running per-symbol positions and per-settle-coin cumulative realized PnL net of fees."""

    symbols: dict[str, SymbolLedgerState] = field(default_factory=dict)
    cumulative_by_settle_coin: dict[str, Decimal] = field(default_factory=dict)

    def position(self, symbol: str) -> SymbolLedgerState:
        return self.symbols.get(symbol_key(symbol), SymbolLedgerState())

    def cumulative(self, settle_coin: str | None) -> Decimal:
        return self.cumulative_by_settle_coin.get(settle_coin_key(settle_coin), ZERO)


@dataclass(frozen=True)
class ReplayDiagnostic:
    record_id: str
    symbol: str
    reason: str


@dataclass(frozen=True)
class ReplayResult:
    state: LedgerState
    records: list[TradeRecord]
    diagnostics: list[ReplayDiagnostic] = field(default_factory=list)


def symbol_key(symbol: str | None) -> str:
    return normalize_token(symbol) or UNKNOWN_KEY


def sort_records(records: Iterable[TradeRecord]) -> list[TradeRecord]:
    return sorted(records, key=lambda record: record.sort_key())


def _now_ms() -> int:
    return int(time.time() * 1000)


def _delivery_adjusted(
    record: TradeRecord,
    qty: Decimal,
    price: Decimal,
    details: DeliveryDetails,
) -> tuple[Decimal, Decimal]:
    contract = parse_option_symbol(record.symbol)
    if contract is not None:
        strike = contract.strike
        if strike is None or strike == 0:
            strike = details.strike if details.strike is not None else ZERO
        delivery_price = details.delivery_price if details.delivery_price is not None else ZERO
        price = intrinsic_value(contract.option_type, delivery_price, strike)
    if details.position is not None and details.position != 0:
        qty = abs(details.position)
    return qty, price


def replay_records(
    records: Iterable[TradeRecord],
    state: LedgerState,
    *,
    update_records: bool = True,
    now_ms: int | None = None,
    policy: MoneyMathPolicy = DEFAULT_MONEY_POLICY,
) -> ReplayResult:
    """Fold records in ``(timestamp, id)`` order over ``state``.

    With ``update_records=False`` the state advances but records come back untouched,
    which is how earlier history seeds a partial replay.
    """
    symbols = dict(state.symbols)
    cumulative_by_coin = dict(state.cumulative_by_settle_coin)
    stamp = now_ms if now_ms is not None else _now_ms()
    out: list[TradeRecord] = []
    diagnostics: list[ReplayDiagnostic] = []

    for record in sort_records(records):
        qty = round10(record.size, policy)
        price = record.price
        fee = record.fee
        tx_type = normalize_token(record.transaction_type)
        side = normalize_token(record.side)

        if tx_type == TransactionType.SETTLEMENT:
            qty = ZERO
            price = ZERO
        elif tx_type == TransactionType.DELIVERY:
            details = record.delivery
            if details is None:
                parsed = parse_delivery_payload(record.raw_json)
                if parsed.diagnostic is not None:
                    diagnostics.append(
                        ReplayDiagnostic(
                            record_id=record.id, symbol=record.symbol, reason=parsed.diagnostic
                        )
                    )
                details = parsed.details
            if details is not None:
                qty, price = _delivery_adjusted(record, qty, price, details)
        elif tx_type != TransactionType.TRADE:
            qty = ZERO

        qty_signed = round10(-qty if side == TradeSide.SELL else qty, policy)

        key = symbol_key(record.symbol)
        before = symbols.get(key, SymbolLedgerState())
        pos_before = round10(before.size, policy)
        avg_before = before.avg_price

        close_qty = ZERO
        if sign(qty_signed) == -sign(pos_before):
            close_qty = round10(min(abs(qty_signed), abs(pos_before)), policy)
        open_qty = round10(qty_signed - sign(qty_signed) * close_qty, policy)

        cash_before = -avg_before * pos_before
        cash_after = cash_before + (-avg_before * close_qty * sign(qty_signed)) + (-price * open_qty)
        pos_after = round10(pos_before + qty_signed, policy)
        avg_after = ZERO if is_flat(pos_after, policy) else -cash_after / pos_after

        realized = ZERO
        if close_qty != 0:
            if pos_before > 0:
                realized = (price - avg_before) * close_qty
            else:
                realized = (avg_before - price) * close_qty

        coin = settle_coin_key(record.currency)
        cumulative_after = realized + cumulative_by_coin.get(coin, ZERO) - fee

        symbols[key] = SymbolLedgerState(size=pos_after, avg_price=avg_after)
        cumulative_by_coin[coin] = cumulative_after

        if update_records:
            record = replace(
                record,
                calculated=Calculated(
                    size_after=pos_after,
                    avg_price_after=avg_after,
                    realized_pnl=realized,
                    cumulative_pnl=cumulative_after,
                ),
                changed_at=stamp,
            )
        out.append(record)

    return ReplayResult(
        state=LedgerState(symbols=symbols, cumulative_by_settle_coin=cumulative_by_coin),
        records=out,
        diagnostics=diagnostics,
    )


def ledger_state_to_maps(state: LedgerState) -> dict[str, dict[str, str]]:
    return {
        "size_by_symbol": {
            key: format_decimal(state.symbols[key].size) for key in sorted(state.symbols)
        },
        "avg_price_by_symbol": {
            key: format_decimal(state.symbols[key].avg_price) for key in sorted(state.symbols)
        },
        "cumulative_by_settle_coin": {
            coin: format_decimal(state.cumulative_by_settle_coin[coin])
            for coin in sorted(state.cumulative_by_settle_coin)
        },
    }


def ledger_state_from_maps(
    size_by_symbol: dict[str, object],
    avg_price_by_symbol: dict[str, object],
    cumulative_by_settle_coin: dict[str, object],
) -> LedgerState:
    symbols: dict[str, SymbolLedgerState] = {}
    for raw_symbol in sorted(set(size_by_symbol) | set(avg_price_by_symbol)):
        symbols[symbol_key(raw_symbol)] = SymbolLedgerState(
            size=Decimal(str(size_by_symbol.get(raw_symbol, "0"))),
            avg_price=Decimal(str(avg_price_by_symbol.get(raw_symbol, "0"))),
        )
    cumulative = {
        settle_coin_key(coin): Decimal(str(value)) for coin, value in cumulative_by_settle_coin.items()
    }
    return LedgerState(symbols=symbols, cumulative_by_settle_coin=cumulative)
