from __future__ import annotations

import json
import logging
import threading

from tradeledger.domain.ledger import LedgerState, replay_records
from tradeledger.domain.models import TradeRecord
from tradeledger.persistence.interfaces import LedgerStoreProtocol

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class PagedViewCache:
    """Newest-first window of records, grown strictly backwards from the last loaded item.

    The ``(timestamp, id)`` of the oldest loaded record anchors the next page, so records
    ingested while scrolling never shift items that were already returned.
    """

    def __init__(self, store: LedgerStoreProtocol, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.store = store
        self.page_size = page_size
        self._items: list[TradeRecord] = []
        self._exhausted = False
        self._lock = threading.Lock()

    @property
    def loaded_count(self) -> int:
        return len(self._items)

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    def reset(self) -> None:
        with self._lock:
            self._items = []
            self._exhausted = False

    def ensure_range(self, start: int, count: int) -> None:
        if start < 0 or count <= 0:
            return
        needed = start + count
        with self._lock:
            if not self._items and not self._exhausted:
                first = self.store.load_latest(self.page_size)
                self._items.extend(first)
                if len(first) < self.page_size:
                    self._exhausted = True
            while len(self._items) < needed and not self._exhausted:
                last = self._items[-1] if self._items else None
                batch = self.store.load_before(
                    last.timestamp if last else None,
                    last.id if last else None,
                    self.page_size,
                )
                if not batch:
                    self._exhausted = True
                    break
                self._items.extend(batch)
                if len(batch) < self.page_size:
                    self._exhausted = True

    def get_range(self, start: int, count: int) -> list[TradeRecord]:
        if start < 0 or count <= 0:
            return []
        with self._lock:
            return list(self._items[start : start + count])

    def get_trades_for_symbol(self, symbol: str, category: str | None = None) -> list[TradeRecord]:
        """Replay one symbol in isolation and return it newest first."""
        records = self.store.load_by_symbol(symbol, category)
        replayed = replay_records(records, LedgerState())
        return list(reversed(replayed.records))

    def get_raw_json_for_symbol(self, symbol: str, category: str | None = None) -> str:
        payloads: list[object] = []
        for record in self.store.load_by_symbol(symbol, category):
            if record.raw_json is None or not record.raw_json.strip():
                continue
            try:
                parsed = json.loads(record.raw_json)
            except ValueError:
                logger.warning(
                    "raw_payload_unparseable",
                    extra={"extra": {"record_id": record.id, "symbol": record.symbol}},
                )
                payloads.append(record.raw_json)
                continue
            if isinstance(parsed, list):
                payloads.extend(parsed)
            else:
                payloads.append(parsed)
        if not payloads:
            return ""
        return json.dumps(payloads, indent=2)
