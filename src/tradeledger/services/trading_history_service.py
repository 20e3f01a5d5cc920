from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime

from tradeledger.adapters.bybit_http import BybitHttpClient
from tradeledger.adapters.transaction_source import TransactionSource
from tradeledger.config import Settings
from tradeledger.domain.models import (
    CurrencyPnlRow,
    DailyPnlChart,
    DailySummary,
    SummaryRow,
    TradeRecord,
)
from tradeledger.services.ledger_store import LedgerStore
from tradeledger.services.operation_guard import OperationGuard
from tradeledger.services.paged_view import PagedViewCache
from tradeledger.services.recalculation_service import (
    RecalculationManager,
    RecalculationResult,
)
from tradeledger.services.reporting_service import ReportingAggregator
from tradeledger.services.sync_service import (
    CancellationToken,
    SyncConfig,
    SyncCoordinator,
    SyncResult,
)

logger = logging.getLogger(__name__)


def date_to_ms(value: date) -> int:
    return int(datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp() * 1000)


class TradingHistoryService:
    """Read/write surface over one ledger database and one transaction source.

    Every mutation flows through the shared operation guard; reporting and paging caches
    are dropped whenever sync or recalculation changes stored records.
    """

    def __init__(
        self,
        store: LedgerStore,
        source: TransactionSource,
        *,
        sync_config: SyncConfig | None = None,
        page_size: int = 100,
        now_ms: Callable[[], int] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.guard = OperationGuard()
        self.reporting = ReportingAggregator(store, clock=clock)
        self.paged = PagedViewCache(store, page_size=page_size)
        self.recalculation = RecalculationManager(
            store, self.guard, on_changed=self._invalidate_caches, now_ms=now_ms
        )
        self.sync = SyncCoordinator(
            store,
            source,
            self.guard,
            self.recalculation,
            config=sync_config,
            on_changed=self._invalidate_caches,
            now_ms=now_ms,
        )
        self.error_message: str | None = None

    @classmethod
    def build(
        cls, settings: Settings, *, source: TransactionSource | None = None
    ) -> TradingHistoryService:
        store = LedgerStore(db_path=settings.state_db_path)
        if source is None:
            source = BybitHttpClient(
                api_key=settings.bybit_api_key.get_secret_value()
                if settings.bybit_api_key
                else None,
                api_secret=settings.bybit_api_secret.get_secret_value()
                if settings.bybit_api_secret
                else None,
                recv_window_ms=settings.bybit_recv_window_ms,
                base_url=settings.bybit_base_url,
            )
        service = cls(
            store,
            source,
            sync_config=SyncConfig.from_settings(settings),
            page_size=settings.page_size,
        )
        registration_ms = settings.registration_time_ms()
        if registration_ms is not None and store.load_meta().registration_time_ms is None:
            service.set_registration_time(registration_ms)
        return service

    def close(self) -> None:
        close = getattr(self.source, "close", None)
        try:
            if callable(close):
                close()
        finally:
            self.store.close()

    def _invalidate_caches(self) -> None:
        self.reporting.invalidate()
        self.paged.reset()

    @property
    def last_loaded_at(self) -> datetime | None:
        value = self.store.load_meta().last_loaded_at_ms
        if value is None:
            return None
        return datetime.fromtimestamp(value / 1000, tz=UTC)

    @property
    def total_transactions_count(self) -> int:
        return self.store.get_count()

    @property
    def is_registration_date_required(self) -> bool:
        return self.sync.is_registration_required()

    def set_registration_time(self, registration_time_ms: int) -> bool:
        applied = self.sync.set_registration_time(registration_time_ms)
        if applied:
            self.error_message = None
        return applied

    def set_registration_date(self, value: date) -> bool:
        return self.set_registration_time(date_to_ms(value))

    def load_latest(self, token: CancellationToken | None = None) -> SyncResult:
        return self._record_outcome(self.sync.sync_forward(token))

    def load_older(self, token: CancellationToken | None = None) -> SyncResult:
        return self._record_outcome(self.sync.sync_backward(token))

    def _record_outcome(self, result: SyncResult) -> SyncResult:
        if result.message and not result.ok:
            self.error_message = result.message
        elif result.ok:
            self.error_message = None
        return result

    def recalculate(self, from_date: date | None = None) -> RecalculationResult:
        started = time.monotonic()
        if from_date is None:
            result = self.recalculation.recalculate_full()
        else:
            result = self.recalculation.recalculate_from(date_to_ms(from_date))
        logger.info(
            "recalculation_requested",
            extra={
                "extra": {
                    "from_date": from_date.isoformat() if from_date else None,
                    "status": result.status.value,
                    "elapsed_seconds": round(time.monotonic() - started, 3),
                }
            },
        )
        return result

    def ensure_range(self, start: int, count: int) -> None:
        self.recalculation.ensure_calculated()
        self.paged.ensure_range(start, count)

    def get_range(self, start: int, count: int) -> list[TradeRecord]:
        return self.paged.get_range(start, count)

    def get_trades_for_symbol(self, symbol: str, category: str | None = None) -> list[TradeRecord]:
        return self.paged.get_trades_for_symbol(symbol, category)

    def get_raw_json_for_symbol(self, symbol: str, category: str | None = None) -> str:
        return self.paged.get_raw_json_for_symbol(symbol, category)

    def get_summary_by_symbol(self) -> list[SummaryRow]:
        self.recalculation.ensure_calculated()
        return self.reporting.get_summary_by_symbol()

    def get_realized_pnl_by_settle_coin(self) -> list[CurrencyPnlRow]:
        self.recalculation.ensure_calculated()
        return self.reporting.get_realized_pnl_by_settle_coin()

    def get_daily_realized_pnl_chart(self) -> DailyPnlChart | None:
        self.recalculation.ensure_calculated()
        return self.reporting.get_daily_realized_pnl_chart()

    def get_daily_summaries(self, symbol: str | None = None) -> list[DailySummary]:
        if symbol:
            return self.reporting.get_daily_summaries_for_symbol(symbol)
        return self.reporting.get_daily_summaries()
