from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from pathlib import Path

from tradeledger.domain.ledger import LedgerState, SymbolLedgerState
from tradeledger.domain.models import Calculated, DailySummary, DeliveryDetails
from tradeledger.domain.sync_meta import NO_MORE_CURSOR, SyncMeta
from tradeledger.services.ledger_store import LedgerStore, prepare_record


def _store(tmp_path: Path) -> LedgerStore:
    return LedgerStore(db_path=str(tmp_path / "ledger.db"))


def test_save_trades_upserts_by_id(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)
    first = make_record("a", 1_000)

    assert store.save_trades([first, make_record("b", 2_000)]) == 2
    assert store.save_trades([replace(first, fee=Decimal("0.5"))]) == 0

    assert store.get_count() == 2
    assert store.load_by_ids(["a"])["a"].fee == Decimal("0.5")


def test_records_round_trip_with_calculated_and_delivery(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)
    record = replace(
        make_record("d", 5_000, "SELL", "0.0001", "123.4567890123", fee="0.01"),
        change=Decimal("-1.5"),
        order_id="o-1",
        raw_json='{"id":"d"}',
        delivery=DeliveryDetails(position=Decimal("-1"), delivery_price=Decimal("31000")),
        calculated=Calculated(
            size_after=Decimal("-0.0001"),
            avg_price_after=Decimal("123.4567890123"),
            realized_pnl=Decimal("0"),
            cumulative_pnl=Decimal("-0.01"),
        ),
        changed_at=99,
    )

    store.save_trades([record])
    [loaded] = store.load_all_ascending()

    assert loaded == record
    assert store.count_uncalculated() == 0


def test_uncalculated_records_are_counted(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)
    store.save_trades([make_record("a", 1_000), make_record("b", 2_000)])

    assert store.count_uncalculated() == 2
    assert store.load_all_ascending()[0].needs_calculation()


def test_load_before_pages_on_timestamp_then_id(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)
    store.save_trades(
        [
            make_record("a", 1_000),
            make_record("b", 2_000),
            make_record("c", 2_000),
            make_record("d", 3_000),
        ]
    )

    latest = store.load_latest(2)
    older = store.load_before(latest[-1].timestamp, latest[-1].id, 10)

    assert [record.id for record in latest] == ["d", "c"]
    assert [record.id for record in older] == ["b", "a"]
    assert store.load_before(1_000, "a", 10) == []


def test_load_by_symbol_is_case_insensitive(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)
    store.save_trades(
        [
            make_record("a", 2_000, symbol="BTCUSDT"),
            make_record("b", 1_000, symbol="BTCUSDT", category="spot"),
            make_record("c", 3_000, symbol="ETHUSDT"),
        ]
    )

    assert [record.id for record in store.load_by_symbol("btcusdt")] == ["b", "a"]
    assert [record.id for record in store.load_by_symbol("btcusdt", "LINEAR")] == ["a"]


def test_meta_round_trips_with_ledger_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    meta = SyncMeta(
        registration_time_ms=1_000,
        latest_synced_time_ms_by_category={"linear": 5_000},
        oldest_cursor_by_category={"linear": "cursor-1", "spot": NO_MORE_CURSOR, "option": None},
        oldest_synced_time_ms_by_category={"linear": 1_500},
        ledger=LedgerState(
            symbols={"BTCUSDT": SymbolLedgerState(Decimal("-2"), Decimal("120.5"))},
            cumulative_by_settle_coin={"USDT": Decimal("20.25")},
        ),
        calculated_through_timestamp=4_999,
        requires_recalculation=True,
        last_loaded_at_ms=6_000,
    )

    store.save_meta(meta)

    assert store.load_meta() == meta
    assert store.load_meta().is_backward_exhausted("spot")


def test_missing_meta_is_empty(tmp_path: Path) -> None:
    assert _store(tmp_path).load_meta() == SyncMeta()


def test_corrupt_meta_forces_recalculation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with store.transaction() as conn:
        conn.execute(
            "INSERT INTO trading_history_meta(key, payload, updated_at) VALUES (?, ?, ?)",
            ("state", "{broken", "now"),
        )

    meta = store.load_meta()

    assert meta.requires_recalculation is True
    assert meta.registration_time_ms is None


def test_save_trades_and_meta_share_one_transaction(tmp_path: Path, make_record) -> None:
    store = _store(tmp_path)

    store.save_trades([make_record("a", 1_000)], meta=SyncMeta(calculated_through_timestamp=1_000))

    reopened = _store(tmp_path)
    assert reopened.get_count() == 1
    assert reopened.load_meta().calculated_through_timestamp == 1_000


def test_daily_summaries_replace_previous_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    summary = DailySummary(
        key="BTCUSDT|2024-01-01",
        day="2024-01-01",
        symbol_key="BTCUSDT",
        symbol="BTCUSDT",
        category="linear",
        total_size=Decimal("2"),
        total_value=Decimal("300"),
        total_fee=Decimal("0.1"),
    )
    other = replace(summary, key="ETHUSDT|2024-01-01", symbol_key="ETHUSDT", symbol="ETHUSDT")

    store.save_daily_summaries([summary, other])
    store.save_daily_summaries([summary])

    assert store.load_daily_summaries() == [summary]
    assert store.load_daily_summaries("btcusdt") == [summary]
    assert store.load_daily_summaries("ETHUSDT") == []


def test_prepare_record_fills_missing_id_and_timestamp(make_record) -> None:
    prepared = prepare_record(make_record("  ", 0), now_ms=777)

    assert prepared.id.strip()
    assert prepared.timestamp == 777
    untouched = make_record("x", 5)
    assert prepare_record(untouched, now_ms=777) is untouched


def test_in_memory_store_keeps_data_across_calls(make_record) -> None:
    store = LedgerStore(db_path=":memory:")
    store.save_trades([make_record("a", 1_000)])

    assert store.get_count() == 1
    store.close()
