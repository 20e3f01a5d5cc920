from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from tradeledger.domain.models import DailySummary, TradeRecord
from tradeledger.domain.sync_meta import SyncMeta


class LedgerStoreProtocol(Protocol):
    def load_meta(self) -> SyncMeta: ...

    def save_meta(self, meta: SyncMeta) -> None: ...

    def save_trades(self, records: Sequence[TradeRecord], meta: SyncMeta | None = None) -> int: ...

    def load_all_ascending(self) -> list[TradeRecord]: ...

    def load_latest(self, limit: int) -> list[TradeRecord]: ...

    def load_before(
        self, timestamp: int | None, record_id: str | None, limit: int
    ) -> list[TradeRecord]: ...

    def load_by_symbol(self, symbol: str, category: str | None = None) -> list[TradeRecord]: ...

    def get_count(self) -> int: ...

    def save_daily_summaries(self, summaries: Sequence[DailySummary]) -> None: ...

    def load_daily_summaries(self, symbol: str | None = None) -> list[DailySummary]: ...
