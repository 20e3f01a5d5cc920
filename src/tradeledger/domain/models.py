from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import StrEnum

UNKNOWN_KEY = "_unknown"


def parse_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise TypeError("Cannot parse decimal from bool")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        normalized = value.strip().replace(",", ".")
        return Decimal(normalized)
    raise TypeError(f"Cannot parse decimal from {type(value)!r}")


def parse_decimal_or_default(value: object, default: Decimal | None = Decimal("0")) -> Decimal | None:
    """Lenient variant used on exchange payloads: unparseable input yields ``default``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        parsed = parse_decimal(value)
    except (TypeError, ValueError, InvalidOperation):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def normalize_token(value: str | None) -> str:
    return (value or "").strip().upper()


def settle_coin_key(currency: str | None) -> str:
    normalized = normalize_token(currency)
    return normalized or UNKNOWN_KEY


class TransactionType(StrEnum):
    TRADE = "TRADE"
    DELIVERY = "DELIVERY"
    SETTLEMENT = "SETTLEMENT"


class TradeSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class ExchangeError(RuntimeError):
    """Raised when an exchange request fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: int | str | None = None,
        error_message: str | None = None,
        request_path: str | None = None,
        request_method: str | None = None,
        request_params: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_message = error_message
        self.request_path = request_path
        self.request_method = request_method
        self.request_params = request_params


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


@dataclass(frozen=True)
class DeliveryDetails:
    position: Decimal | None = None
    delivery_price: Decimal | None = None
    strike: Decimal | None = None


@dataclass(frozen=True)
class Calculated:
    size_after: Decimal | None = None
    avg_price_after: Decimal | None = None
    realized_pnl: Decimal | None = None
    cumulative_pnl: Decimal | None = None

    def is_empty(self) -> bool:
        return (
            self.size_after is None
            and self.avg_price_after is None
            and self.realized_pnl is None
            and self.cumulative_pnl is None
        )


@dataclass(frozen=True)
class TradeRecord:
    id: str
    timestamp: int
    symbol: str
    category: str
    transaction_type: str
    side: str
    size: Decimal
    price: Decimal
    fee: Decimal
    currency: str
    change: Decimal | None = None
    cash_flow: Decimal | None = None
    order_id: str | None = None
    order_link_id: str | None = None
    trade_id: str | None = None
    raw_json: str | None = None
    delivery: DeliveryDetails | None = None
    calculated: Calculated | None = None
    changed_at: int | None = None

    def sort_key(self) -> tuple[int, str]:
        return (self.timestamp, self.id)

    def needs_calculation(self) -> bool:
        return self.calculated is None or self.calculated.is_empty()


@dataclass(frozen=True)
class RawTransaction:
    """One exchange transaction-log item before it becomes a ledger record."""

    unique_key: str
    timestamp: int
    symbol: str
    category: str
    transaction_type: str
    side: str
    qty: Decimal
    price: Decimal
    fee: Decimal
    currency: str
    change: Decimal | None
    cash_flow: Decimal | None
    order_id: str | None
    order_link_id: str | None
    trade_id: str | None
    raw_json: str


@dataclass(frozen=True)
class TransactionPage:
    items: list[RawTransaction] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass(frozen=True)
class SummaryRow:
    category: str
    symbol: str
    settle_coin: str
    trades: int
    total_qty: Decimal
    total_value: Decimal
    total_fees: Decimal
    realized_pnl: Decimal


@dataclass(frozen=True)
class CurrencyPnlRow:
    settle_coin: str
    realized_pnl: Decimal
    fees: Decimal
    net_pnl: Decimal


@dataclass(frozen=True)
class DailySummary:
    key: str
    day: str
    symbol_key: str
    symbol: str
    category: str
    total_size: Decimal
    total_value: Decimal
    total_fee: Decimal


@dataclass(frozen=True)
class DailyPnlSeries:
    settle_coin: str
    values: tuple[Decimal, ...]


@dataclass(frozen=True)
class DailyPnlChart:
    days: tuple[str, ...]
    series: tuple[DailyPnlSeries, ...]
    min_value: Decimal
    max_value: Decimal
