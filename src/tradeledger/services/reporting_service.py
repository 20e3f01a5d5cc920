from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from tradeledger.domain.models import (
    UNKNOWN_KEY,
    CurrencyPnlRow,
    DailyPnlChart,
    DailyPnlSeries,
    DailySummary,
    SummaryRow,
    TradeRecord,
    normalize_token,
    settle_coin_key,
)
from tradeledger.domain.money_policy import ZERO
from tradeledger.persistence.interfaces import LedgerStoreProtocol

logger = logging.getLogger(__name__)

CHART_DAYS = 30


def utc_day(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).strftime("%Y-%m-%d")


def _realized(record: TradeRecord) -> Decimal:
    if record.calculated is None or record.calculated.realized_pnl is None:
        return ZERO
    return record.calculated.realized_pnl


@dataclass
class _SummaryBucket:
    category: str
    symbol: str
    coin: str
    trades: int = 0
    qty: Decimal = ZERO
    value: Decimal = ZERO
    fees: Decimal = ZERO
    realized: Decimal = ZERO


def _blank_to_unknown(value: str | None) -> str:
    stripped = (value or "").strip()
    return stripped or UNKNOWN_KEY


def build_summary_by_symbol(records: Sequence[TradeRecord]) -> list[SummaryRow]:
    buckets: dict[str, _SummaryBucket] = {}
    for record in records:
        category = _blank_to_unknown(record.category)
        symbol = _blank_to_unknown(record.symbol)
        coin = settle_coin_key(record.currency)
        key = f"{category}|{symbol}|{coin}".casefold()
        bucket = buckets.setdefault(key, _SummaryBucket(category=category, symbol=symbol, coin=coin))
        bucket.trades += 1
        bucket.qty += record.size
        bucket.value += record.price * record.size
        bucket.fees += record.fee
        bucket.realized += _realized(record)

    rows = [
        SummaryRow(
            category=bucket.category,
            symbol=bucket.symbol,
            settle_coin=bucket.coin,
            trades=bucket.trades,
            total_qty=bucket.qty,
            total_value=bucket.value,
            total_fees=bucket.fees,
            realized_pnl=bucket.realized,
        )
        for bucket in buckets.values()
    ]
    rows.sort(key=lambda row: (-row.trades, row.category.casefold(), row.symbol.casefold()))
    return rows


def build_pnl_by_settle_coin(records: Sequence[TradeRecord]) -> list[CurrencyPnlRow]:
    realized: dict[str, Decimal] = {}
    fees: dict[str, Decimal] = {}
    for record in records:
        coin = settle_coin_key(record.currency)
        realized[coin] = realized.get(coin, ZERO) + _realized(record)
        fees[coin] = fees.get(coin, ZERO) + record.fee
    return [
        CurrencyPnlRow(
            settle_coin=coin,
            realized_pnl=realized[coin],
            fees=fees[coin],
            net_pnl=realized[coin] - fees[coin],
        )
        for coin in sorted(realized)
    ]


def build_daily_summaries(records: Sequence[TradeRecord]) -> list[DailySummary]:
    buckets: dict[str, DailySummary] = {}
    for record in records:
        if record.timestamp <= 0:
            continue
        day = utc_day(record.timestamp)
        symbol_key = normalize_token(record.symbol) or UNKNOWN_KEY
        key = f"{symbol_key}|{day}"
        current = buckets.get(key)
        if current is None:
            current = DailySummary(
                key=key,
                day=day,
                symbol_key=symbol_key,
                symbol=record.symbol,
                category=record.category,
                total_size=ZERO,
                total_value=ZERO,
                total_fee=ZERO,
            )
        buckets[key] = DailySummary(
            key=key,
            day=day,
            symbol_key=symbol_key,
            symbol=current.symbol,
            category=current.category,
            total_size=current.total_size + record.size,
            total_value=current.total_value + record.price * record.size,
            total_fee=current.total_fee + record.fee,
        )
    return sorted(buckets.values(), key=lambda summary: (summary.day, summary.symbol_key))


def build_daily_pnl_chart(
    records: Sequence[TradeRecord], *, today: datetime, days: int = CHART_DAYS
) -> DailyPnlChart | None:
    """Realized PnL per UTC day and settle coin over the ``days`` ending ``today``."""
    if not records:
        return None
    midnight = datetime(today.year, today.month, today.day, tzinfo=UTC)
    start = midnight - timedelta(days=days - 1)
    start_ms = int(start.timestamp() * 1000)
    day_keys = tuple((start + timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(days))
    index = {day: position for position, day in enumerate(day_keys)}

    per_coin: dict[str, list[Decimal]] = {}
    for record in records:
        if record.timestamp < start_ms:
            continue
        position = index.get(utc_day(record.timestamp))
        if position is None:
            continue
        values = per_coin.setdefault(settle_coin_key(record.currency), [ZERO] * days)
        values[position] += _realized(record)

    if not per_coin:
        return None

    series = tuple(
        DailyPnlSeries(settle_coin=coin, values=tuple(per_coin[coin])) for coin in sorted(per_coin)
    )
    all_values = [value for item in series for value in item.values]
    return DailyPnlChart(
        days=day_keys,
        series=series,
        min_value=min(min(all_values), ZERO),
        max_value=max(max(all_values), ZERO),
    )


@dataclass
class ReportCache:
    summary: list[SummaryRow] | None = None
    pnl_by_coin: list[CurrencyPnlRow] | None = None
    daily_summaries: list[DailySummary] | None = None
    chart: DailyPnlChart | None = None
    chart_day: str | None = None


class ReportingAggregator:
    """Derived read models over the full ledger, cached and invalidated together."""

    def __init__(
        self,
        store: LedgerStoreProtocol,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._cache = ReportCache()
        self._records: list[TradeRecord] | None = None

    def invalidate(self) -> None:
        with self._lock:
            self._cache = ReportCache()
            self._records = None
        logger.debug("report_cache_invalidated")

    def _load_records(self) -> list[TradeRecord]:
        if self._records is None:
            self._records = self.store.load_all_ascending()
        return self._records

    def get_summary_by_symbol(self) -> list[SummaryRow]:
        with self._lock:
            if self._cache.summary is None:
                self._cache.summary = build_summary_by_symbol(self._load_records())
            return list(self._cache.summary)

    def get_realized_pnl_by_settle_coin(self) -> list[CurrencyPnlRow]:
        with self._lock:
            if self._cache.pnl_by_coin is None:
                self._cache.pnl_by_coin = build_pnl_by_settle_coin(self._load_records())
            return list(self._cache.pnl_by_coin)

    def get_daily_summaries(self) -> list[DailySummary]:
        with self._lock:
            if self._cache.daily_summaries is None:
                summaries = build_daily_summaries(self._load_records())
                self.store.save_daily_summaries(summaries)
                self._cache.daily_summaries = summaries
            return list(self._cache.daily_summaries)

    def get_daily_summaries_for_symbol(self, symbol: str) -> list[DailySummary]:
        key = normalize_token(symbol) or UNKNOWN_KEY
        return [summary for summary in self.get_daily_summaries() if summary.symbol_key == key]

    def get_daily_realized_pnl_chart(self) -> DailyPnlChart | None:
        today = self._clock()
        today_key = today.astimezone(UTC).strftime("%Y-%m-%d")
        with self._lock:
            if self._cache.chart_day != today_key:
                self._cache.chart = build_daily_pnl_chart(
                    self._load_records(), today=today.astimezone(UTC)
                )
                self._cache.chart_day = today_key
            return self._cache.chart
