from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum

from tradeledger.domain.ledger import LedgerState, ReplayDiagnostic, replay_records, sort_records
from tradeledger.domain.models import TradeRecord
from tradeledger.logging_context import with_logging_context
from tradeledger.observability import get_instrumentation
from tradeledger.services.ledger_store import LedgerStore
from tradeledger.services.operation_guard import OperationGuard, OperationState

logger = logging.getLogger(__name__)


class RecalculationStatus(StrEnum):
    COMPLETED = "completed"
    SKIPPED_BUSY = "skipped_busy"
    NOT_NEEDED = "not_needed"


@dataclass(frozen=True)
class RecalculationResult:
    status: RecalculationStatus
    records_replayed: int = 0
    records_seeded: int = 0
    calculated_through_timestamp: int | None = None
    diagnostics: tuple[ReplayDiagnostic, ...] = ()


def log_replay_diagnostics(diagnostics: Sequence[ReplayDiagnostic]) -> None:
    for diagnostic in diagnostics:
        logger.warning(
            "delivery_payload_malformed",
            extra={
                "extra": {
                    "record_id": diagnostic.record_id,
                    "symbol": diagnostic.symbol,
                    "reason": diagnostic.reason,
                }
            },
        )


class RecalculationManager:
    """Full, partial and lazy re-derivation of calculated fields from stored records."""

    def __init__(
        self,
        store: LedgerStore,
        guard: OperationGuard,
        *,
        on_changed: Callable[[], None] | None = None,
        now_ms: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self._on_changed = on_changed
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))

    def recalculate_full(self) -> RecalculationResult:
        with self.guard.try_enter(OperationState.RECALCULATING) as entered:
            if not entered:
                return RecalculationResult(status=RecalculationStatus.SKIPPED_BUSY)
            return self.recalculate_unlocked(None)

    def recalculate_from(self, cutoff_ms: int) -> RecalculationResult:
        with self.guard.try_enter(OperationState.RECALCULATING) as entered:
            if not entered:
                return RecalculationResult(status=RecalculationStatus.SKIPPED_BUSY)
            return self.recalculate_unlocked(cutoff_ms)

    def ensure_calculated(self) -> RecalculationResult:
        """Run a full recompute when the meta flag or stored records ask for one."""
        meta = self.store.load_meta()
        if not meta.requires_recalculation and self.store.count_uncalculated() == 0:
            return RecalculationResult(
                status=RecalculationStatus.NOT_NEEDED,
                calculated_through_timestamp=meta.calculated_through_timestamp,
            )
        logger.info(
            "ledger_lazy_recalculation_triggered",
            extra={"extra": {"requires_recalculation": meta.requires_recalculation}},
        )
        return self.recalculate_full()

    def recalculate_unlocked(self, cutoff_ms: int | None) -> RecalculationResult:
        """Caller must already hold the operation guard."""
        started = time.monotonic()
        with with_logging_context(operation="recalculate"):
            records = self.store.load_all_ascending()
            meta = self.store.load_meta()
            if not records:
                self.store.save_meta(
                    replace(
                        meta,
                        ledger=LedgerState(),
                        calculated_through_timestamp=None,
                        requires_recalculation=False,
                    )
                )
                self._notify_changed()
                return RecalculationResult(status=RecalculationStatus.COMPLETED)

            before, after = split_at_cutoff(records, cutoff_ms)
            seed = replay_records(before, LedgerState(), update_records=False)
            replayed = replay_records(after, seed.state, now_ms=self._now_ms())
            diagnostics = [*seed.diagnostics, *replayed.diagnostics]
            log_replay_diagnostics(diagnostics)

            through = max(record.timestamp for record in records)
            new_meta = replace(
                meta,
                ledger=replayed.state,
                calculated_through_timestamp=through,
                requires_recalculation=False,
            )
            self.store.save_trades(replayed.records, meta=new_meta)

        get_instrumentation().recalculation_finished(
            partial=cutoff_ms is not None,
            records_replayed=len(replayed.records),
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "ledger_recalculated",
            extra={
                "extra": {
                    "cutoff_ms": cutoff_ms,
                    "records_seeded": len(before),
                    "records_replayed": len(after),
                    "calculated_through_timestamp": through,
                }
            },
        )
        self._notify_changed()
        return RecalculationResult(
            status=RecalculationStatus.COMPLETED,
            records_replayed=len(after),
            records_seeded=len(before),
            calculated_through_timestamp=through,
            diagnostics=tuple(diagnostics),
        )

    def _notify_changed(self) -> None:
        if self._on_changed is not None:
            self._on_changed()


def split_at_cutoff(
    records: Sequence[TradeRecord], cutoff_ms: int | None
) -> tuple[list[TradeRecord], list[TradeRecord]]:
    """Split into the seed part (``0 < ts < cutoff``) and the part that gets replayed."""
    ordered = sort_records(records)
    if cutoff_ms is None:
        return [], ordered
    before = [record for record in ordered if 0 < record.timestamp < cutoff_ms]
    after = [record for record in ordered if not 0 < record.timestamp < cutoff_ms]
    return before, after
