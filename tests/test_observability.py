from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from tradeledger import observability
from tradeledger.domain.models import RawTransaction, TransactionPage
from tradeledger.domain.sync_meta import SyncMeta
from tradeledger.observability import (
    LedgerInstrumentation,
    configure_instrumentation,
    get_instrumentation,
)
from tradeledger.services import recalculation_service, sync_service
from tradeledger.services.ledger_store import LedgerStore
from tradeledger.services.operation_guard import OperationGuard
from tradeledger.services.recalculation_service import RecalculationManager
from tradeledger.services.sync_service import DAY_MS, SyncConfig, SyncCoordinator

REGISTERED = 1_700_000_000_000


class _RecordingInstrumentation(LedgerInstrumentation):
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def sync_window(self, *, category: str, items: int) -> None:
        self.events.append(("sync_window", {"category": category, "items": items}))

    def sync_finished(self, *, direction: str, status: str, duration_seconds: float) -> None:
        self.events.append(("sync_finished", {"direction": direction, "status": status}))

    def recalculation_finished(
        self, *, partial: bool, records_replayed: int, duration_seconds: float
    ) -> None:
        self.events.append(
            ("recalculation_finished", {"partial": partial, "records": records_replayed})
        )


class _Source:
    def has_credentials(self) -> bool:
        return True

    def get_transaction_log(self, *, category: str, start_time_ms=None, **_) -> TransactionPage:
        if start_time_ms is None or start_time_ms > REGISTERED:
            return TransactionPage(items=[])
        item = RawTransaction(
            unique_key="a",
            timestamp=REGISTERED + DAY_MS,
            symbol="BTCUSDT",
            category=category,
            transaction_type="TRADE",
            side="Buy",
            qty=Decimal("1"),
            price=Decimal("100"),
            fee=Decimal("0"),
            currency="USDT",
            change=None,
            cash_flow=None,
            order_id=None,
            order_link_id=None,
            trade_id=None,
            raw_json='{"id": "a"}',
        )
        return TransactionPage(items=[item])


def test_default_instrumentation_records_nothing() -> None:
    instrumentation = get_instrumentation()

    assert isinstance(instrumentation, LedgerInstrumentation)
    with instrumentation.rest_call(method="GET", path="/v5/account/transaction-log"):
        pass
    instrumentation.rest_response(path="/v5/account/transaction-log", status_code=200)
    instrumentation.sync_window(category="linear", items=3)
    assert instrumentation.shutdown() is None


def test_disabled_configuration_keeps_noop(monkeypatch) -> None:
    noop = LedgerInstrumentation()
    monkeypatch.setattr(observability, "_INSTRUMENTATION", noop)
    monkeypatch.setattr(observability, "_CONFIGURED_ONCE", False)

    configured = configure_instrumentation(enabled=False)

    assert configured is noop
    assert configure_instrumentation(enabled=True) is noop


def test_sync_and_recalculation_report_through_instrumentation(
    tmp_path: Path, monkeypatch
) -> None:
    recording = _RecordingInstrumentation()
    monkeypatch.setattr(sync_service, "get_instrumentation", lambda: recording)
    monkeypatch.setattr(recalculation_service, "get_instrumentation", lambda: recording)
    store = LedgerStore(db_path=str(tmp_path / "obs.db"))
    store.save_meta(SyncMeta(registration_time_ms=REGISTERED))
    guard = OperationGuard()
    recalculation = RecalculationManager(store, guard, now_ms=lambda: REGISTERED)
    coordinator = SyncCoordinator(
        store,
        _Source(),
        guard,
        recalculation,
        config=SyncConfig(categories=("linear",), window_ms=7 * DAY_MS),
        now_ms=lambda: REGISTERED + 10 * DAY_MS,
    )

    coordinator.sync_forward()
    recalculation.recalculate_full()

    assert recording.events == [
        ("sync_window", {"category": "linear", "items": 1}),
        ("sync_window", {"category": "linear", "items": 0}),
        ("sync_finished", {"direction": "forward", "status": "completed"}),
        ("recalculation_finished", {"partial": False, "records": 1}),
    ]
