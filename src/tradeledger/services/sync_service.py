from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from uuid import uuid4

from tradeledger.adapters.bybit_http import MISSING_CREDENTIALS_MESSAGE
from tradeledger.adapters.bybit_mapping import to_trade_record
from tradeledger.adapters.transaction_source import TransactionSource
from tradeledger.config import SUPPORTED_CATEGORIES, Settings
from tradeledger.domain.ledger import replay_records, sort_records
from tradeledger.domain.models import ConfigurationError, RawTransaction, TradeRecord
from tradeledger.domain.sync_meta import NO_MORE_CURSOR, SyncMeta
from tradeledger.logging_context import with_logging_context
from tradeledger.observability import get_instrumentation
from tradeledger.services.ledger_store import LedgerStore, prepare_record
from tradeledger.services.operation_guard import OperationGuard, OperationState
from tradeledger.services.recalculation_service import (
    RecalculationManager,
    log_replay_diagnostics,
)

logger = logging.getLogger(__name__)

REGISTRATION_REQUIRED_MESSAGE = "Select your registration date before loading transactions."
DAY_MS = 24 * 60 * 60 * 1000


class SyncStatus(StrEnum):
    COMPLETED = "completed"
    SKIPPED_BUSY = "skipped_busy"
    CONFIGURATION_ERROR = "configuration_error"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncDirection(StrEnum):
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    direction: SyncDirection
    fetched: int = 0
    inserted: int = 0
    categories: tuple[str, ...] = ()
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.COMPLETED


@dataclass(frozen=True)
class SyncConfig:
    categories: tuple[str, ...] = SUPPORTED_CATEGORIES
    window_ms: int = 7 * DAY_MS
    page_limit: int = 100
    account_type: str = "UNIFIED"

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncConfig:
        return cls(
            categories=tuple(settings.sync_categories),
            window_ms=settings.sync_window_days * DAY_MS,
            page_limit=settings.sync_page_limit,
            account_type=settings.bybit_account_type,
        )


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class SyncCancelled(Exception):
    """Raised internally when a cancellation token fires between exchange calls."""


@dataclass
class _IngestOutcome:
    inserted: int = 0
    earliest_new_ts: int | None = None
    raw_changed: bool = False
    new_records: list[TradeRecord] = field(default_factory=list)


class SyncCoordinator:
    """Pulls transaction-log pages per category and folds them into the stored ledger."""

    def __init__(
        self,
        store: LedgerStore,
        source: TransactionSource,
        guard: OperationGuard,
        recalculation: RecalculationManager,
        *,
        config: SyncConfig | None = None,
        on_changed: Callable[[], None] | None = None,
        now_ms: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.guard = guard
        self.recalculation = recalculation
        self.config = config or SyncConfig()
        self._on_changed = on_changed
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))

    def is_registration_required(self) -> bool:
        meta = self.store.load_meta()
        if meta.registration_time_ms is not None:
            return False
        return any(meta.forward_watermark(category) is None for category in self.config.categories)

    def set_registration_time(self, registration_time_ms: int) -> bool:
        """Store the sync floor; returns False when a mutation is already running."""
        if registration_time_ms <= 0:
            raise ValueError("registration_time_ms must be > 0")
        with self.guard.try_enter(OperationState.UPDATING_SETTINGS) as entered:
            if not entered:
                return False
            meta = self.store.load_meta()
            changed = meta.registration_time_ms != registration_time_ms
            self.store.save_meta(
                replace(
                    meta,
                    registration_time_ms=registration_time_ms,
                    requires_recalculation=meta.requires_recalculation
                    or (changed and self.store.get_count() > 0),
                )
            )
        logger.info(
            "registration_time_set",
            extra={"extra": {"registration_time_ms": registration_time_ms, "changed": changed}},
        )
        return True

    def sync_forward(self, token: CancellationToken | None = None) -> SyncResult:
        with self.guard.try_enter(OperationState.FORWARD_SYNCING) as entered:
            if not entered:
                return SyncResult(status=SyncStatus.SKIPPED_BUSY, direction=SyncDirection.FORWARD)
            with with_logging_context(sync_id=uuid4().hex[:12], operation="sync_forward"):
                return self._run(SyncDirection.FORWARD, self._forward_category, token)

    def sync_backward(self, token: CancellationToken | None = None) -> SyncResult:
        with self.guard.try_enter(OperationState.BACKWARD_SYNCING) as entered:
            if not entered:
                return SyncResult(status=SyncStatus.SKIPPED_BUSY, direction=SyncDirection.BACKWARD)
            with with_logging_context(sync_id=uuid4().hex[:12], operation="sync_backward"):
                return self._run(SyncDirection.BACKWARD, self._backward_category, token)

    def _run(
        self,
        direction: SyncDirection,
        step: Callable[[str, CancellationToken | None, _IngestOutcome], None],
        token: CancellationToken | None,
    ) -> SyncResult:
        started = time.monotonic()
        totals = _IngestOutcome()
        done: list[str] = []
        status = SyncStatus.COMPLETED
        message: str | None = None
        try:
            if not self.source.has_credentials():
                raise ConfigurationError(MISSING_CREDENTIALS_MESSAGE)
            for category in self.config.categories:
                with with_logging_context(category=category):
                    step(category, token, totals)
                done.append(category)
            if direction == SyncDirection.FORWARD:
                meta = self.store.load_meta()
                self.store.save_meta(replace(meta, last_loaded_at_ms=self._now_ms()))
        except ConfigurationError as exc:
            status = SyncStatus.CONFIGURATION_ERROR
            message = str(exc)
            logger.warning("sync_configuration_error", extra={"extra": {"message": message}})
        except SyncCancelled:
            status = SyncStatus.CANCELLED
            message = "Sync cancelled."
            logger.info("sync_cancelled", extra={"extra": {"completed_categories": done}})
        except Exception as exc:  # noqa: BLE001
            status = SyncStatus.FAILED
            message = str(exc) or type(exc).__name__
            logger.exception("sync_failed", extra={"extra": {"completed_categories": done}})

        try:
            if direction == SyncDirection.FORWARD and totals.earliest_new_ts is not None:
                self.recalculation.recalculate_unlocked(totals.earliest_new_ts)
            elif direction == SyncDirection.FORWARD and totals.raw_changed:
                self.recalculation.recalculate_unlocked(None)
        except Exception as exc:  # noqa: BLE001
            status = SyncStatus.FAILED
            message = message or str(exc) or type(exc).__name__
            logger.exception("sync_recalculation_failed")

        fetched = len(totals.new_records)
        get_instrumentation().sync_finished(
            direction=direction.value,
            status=status.value,
            duration_seconds=time.monotonic() - started,
        )
        if totals.inserted or totals.raw_changed:
            self._notify_changed()
        logger.info(
            "sync_finished",
            extra={
                "extra": {
                    "direction": direction.value,
                    "status": status.value,
                    "fetched": fetched,
                    "inserted": totals.inserted,
                }
            },
        )
        return SyncResult(
            status=status,
            direction=direction,
            fetched=fetched,
            inserted=totals.inserted,
            categories=tuple(done),
            message=message,
        )

    def _check_cancelled(self, token: CancellationToken | None) -> None:
        if token is not None and token.is_cancelled:
            raise SyncCancelled()

    def _forward_category(
        self, category: str, token: CancellationToken | None, totals: _IngestOutcome
    ) -> None:
        meta = self.store.load_meta()
        start = meta.forward_watermark(category)
        if start is None:
            start = meta.registration_time_ms
        if start is None:
            raise ConfigurationError(REGISTRATION_REQUIRED_MESSAGE)

        now = self._now_ms()
        window_start = start
        while window_start < now:
            self._check_cancelled(token)
            window_end = min(window_start + self.config.window_ms, now)
            items = self._drain_window(category, window_start, window_end, token)
            get_instrumentation().sync_window(category=category, items=len(items))

            if items:
                watermark = max(item.timestamp for item in items) + 1
            else:
                watermark = window_end
            window_outcome = self._ingest(items, lambda m: m.with_forward_watermark(category, watermark))
            _merge(totals, window_outcome)
            logger.debug(
                "sync_window_completed",
                extra={
                    "extra": {
                        "window_start": window_start,
                        "window_end": window_end,
                        "items": len(items),
                        "watermark": watermark,
                    }
                },
            )
            window_start = window_end + 1

    def _drain_window(
        self,
        category: str,
        start_ms: int,
        end_ms: int,
        token: CancellationToken | None,
    ) -> list[RawTransaction]:
        items: list[RawTransaction] = []
        cursor: str | None = None
        while True:
            self._check_cancelled(token)
            page = self.source.get_transaction_log(
                category=category,
                limit=self.config.page_limit,
                account_type=self.config.account_type,
                cursor=cursor,
                start_time_ms=start_ms,
                end_time_ms=end_ms,
            )
            items.extend(page.items)
            if not page.next_cursor:
                return items
            cursor = page.next_cursor

    def _backward_category(
        self, category: str, token: CancellationToken | None, totals: _IngestOutcome
    ) -> None:
        meta = self.store.load_meta()
        if meta.is_backward_exhausted(category):
            return

        self._check_cancelled(token)
        cursor = meta.backward_cursor(category)
        end_time_ms: int | None = None
        if not cursor:
            bound = meta.oldest_synced_time_ms_by_category.get(category)
            if bound is None:
                bound = meta.registration_time_ms
            if bound is not None:
                end_time_ms = max(0, bound - 1)

        page = self.source.get_transaction_log(
            category=category,
            limit=self.config.page_limit,
            account_type=self.config.account_type,
            cursor=cursor,
            end_time_ms=end_time_ms,
        )
        next_cursor = page.next_cursor or NO_MORE_CURSOR

        def _advance(current: SyncMeta) -> SyncMeta:
            updated = current.with_backward_cursor(category, next_cursor)
            timestamps = [item.timestamp for item in page.items if item.timestamp > 0]
            if timestamps:
                updated = updated.with_oldest_synced(category, min(timestamps))
            return updated

        _merge(totals, self._ingest(page.items, _advance, replay=False))

    def _ingest(
        self,
        items: Sequence[RawTransaction],
        advance_meta: Callable[[SyncMeta], SyncMeta],
        *,
        replay: bool = True,
    ) -> _IngestOutcome:
        """Persist one drained window or page together with the advanced meta."""
        outcome = _IngestOutcome()
        records = [prepare_record(to_trade_record(item)) for item in items]
        deduped = list({record.id: record for record in records}.values())
        existing = self.store.load_by_ids([record.id for record in deduped])

        fresh: list[TradeRecord] = []
        refreshed: list[TradeRecord] = []
        for record in deduped:
            known = existing.get(record.id)
            if known is None:
                fresh.append(record)
                continue
            if _economics(known) != _economics(record):
                outcome.raw_changed = True
            refreshed.append(
                replace(record, calculated=known.calculated, changed_at=known.changed_at)
            )

        meta = advance_meta(self.store.load_meta())
        to_save = list(refreshed)
        if fresh:
            ordered = sort_records(fresh)
            if replay:
                if (
                    meta.calculated_through_timestamp is not None
                    and ordered[0].timestamp <= meta.calculated_through_timestamp
                ):
                    outcome.earliest_new_ts = ordered[0].timestamp
                result = replay_records(ordered, meta.ledger, now_ms=self._now_ms())
                log_replay_diagnostics(result.diagnostics)
                through = max(ordered[-1].timestamp, meta.calculated_through_timestamp or 0)
                meta = replace(meta, ledger=result.state, calculated_through_timestamp=through)
                to_save.extend(result.records)
            else:
                meta = replace(meta, requires_recalculation=True)
                to_save.extend(ordered)
        if outcome.raw_changed:
            meta = replace(meta, requires_recalculation=True)

        outcome.inserted = self.store.save_trades(to_save, meta=meta)
        outcome.new_records = records
        return outcome

    def _notify_changed(self) -> None:
        if self._on_changed is not None:
            self._on_changed()


def _economics(record: TradeRecord) -> tuple[object, ...]:
    return (
        record.timestamp,
        record.symbol,
        record.transaction_type,
        record.side,
        record.size,
        record.price,
        record.fee,
        record.currency,
        record.raw_json,
    )


def _merge(total: _IngestOutcome, part: _IngestOutcome) -> None:
    total.inserted += part.inserted
    total.raw_changed = total.raw_changed or part.raw_changed
    total.new_records.extend(part.new_records)
    if part.earliest_new_ts is not None:
        total.earliest_new_ts = (
            part.earliest_new_ts
            if total.earliest_new_ts is None
            else min(total.earliest_new_ts, part.earliest_new_ts)
        )
