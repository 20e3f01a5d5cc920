from __future__ import annotations

import json
from dataclasses import replace
from decimal import Decimal

from tradeledger.domain.ledger import (
    LedgerState,
    SymbolLedgerState,
    ledger_state_from_maps,
    ledger_state_to_maps,
    replay_records,
)
from tradeledger.domain.models import UNKNOWN_KEY, DeliveryDetails


def test_weighted_average_and_partial_close(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100"),
        make_record("b", 2_000, "BUY", "1", "200"),
        make_record("c", 3_000, "SELL", "1", "180", fee="1"),
    ]

    result = replay_records(records, LedgerState(), now_ms=42)

    second = result.records[1].calculated
    assert second is not None
    assert second.size_after == Decimal("2")
    assert second.avg_price_after == Decimal("150")

    third = result.records[2].calculated
    assert third is not None
    assert third.size_after == Decimal("1")
    assert third.avg_price_after == Decimal("150")
    assert third.realized_pnl == Decimal("30")
    assert third.cumulative_pnl == Decimal("29")
    assert result.state.position("btcusdt") == SymbolLedgerState(Decimal("1"), Decimal("150"))
    assert all(record.changed_at == 42 for record in result.records)


def test_sell_through_zero_flips_to_short_at_trade_price(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100"),
        make_record("b", 2_000, "SELL", "3", "120"),
    ]

    result = replay_records(records, LedgerState())

    calculated = result.records[1].calculated
    assert calculated is not None
    assert calculated.realized_pnl == Decimal("20")
    assert calculated.size_after == Decimal("-2")
    assert calculated.avg_price_after == Decimal("120")


def test_short_cover_realizes_from_average_minus_price(make_record) -> None:
    records = [
        make_record("a", 1_000, "SELL", "2", "100"),
        make_record("b", 2_000, "BUY", "1", "90"),
    ]

    result = replay_records(records, LedgerState())

    opened = result.records[0].calculated
    covered = result.records[1].calculated
    assert opened is not None and covered is not None
    assert opened.size_after == Decimal("-2")
    assert opened.avg_price_after == Decimal("100")
    assert covered.realized_pnl == Decimal("10")
    assert covered.size_after == Decimal("-1")
    assert covered.avg_price_after == Decimal("100")


def test_flat_position_resets_average_price(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "2", "100"),
        make_record("b", 2_000, "SELL", "2", "90"),
    ]

    result = replay_records(records, LedgerState())

    closed = result.records[1].calculated
    assert closed is not None
    assert closed.size_after == 0
    assert closed.avg_price_after == 0
    assert closed.realized_pnl == Decimal("-20")


def test_settlement_keeps_position_and_only_charges_fee(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100"),
        make_record(
            "b", 2_000, "BUY", "5", "999", fee="2", transaction_type="SETTLEMENT"
        ),
    ]

    result = replay_records(records, LedgerState())

    settled = result.records[1].calculated
    assert settled is not None
    assert settled.size_after == Decimal("1")
    assert settled.avg_price_after == Decimal("100")
    assert settled.realized_pnl == 0
    assert settled.cumulative_pnl == Decimal("-2")


def test_unknown_transaction_type_contributes_no_quantity(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100"),
        make_record("b", 2_000, "SELL", "1", "500", transaction_type="TRANSFER_IN"),
    ]

    result = replay_records(records, LedgerState())

    calculated = result.records[1].calculated
    assert calculated is not None
    assert calculated.size_after == Decimal("1")
    assert calculated.realized_pnl == 0


def test_equal_timestamps_are_ordered_by_id(make_record) -> None:
    records = [
        make_record("b", 1_000, "SELL", "1", "110"),
        make_record("a", 1_000, "BUY", "1", "100"),
    ]

    result = replay_records(records, LedgerState())

    assert [record.id for record in result.records] == ["a", "b"]
    closing = result.records[1].calculated
    assert closing is not None
    assert closing.realized_pnl == Decimal("10")


def test_call_delivery_uses_intrinsic_value_from_symbol_strike(make_record) -> None:
    symbol = "BTC-27DEC24-30000-C"
    records = [
        make_record("a", 1_000, "BUY", "1", "500", symbol=symbol, category="option"),
        make_record(
            "b",
            2_000,
            "SELL",
            "1",
            "0",
            symbol=symbol,
            category="option",
            transaction_type="DELIVERY",
            raw_json=json.dumps({"deliveryPrice": "32000", "position": "1"}),
        ),
    ]

    result = replay_records(records, LedgerState())

    delivered = result.records[1].calculated
    assert result.diagnostics == []
    assert delivered is not None
    assert delivered.realized_pnl == Decimal("1500")
    assert delivered.size_after == 0


def test_put_delivery_out_of_the_money_realizes_premium_loss(make_record) -> None:
    symbol = "BTC-27DEC24-30000-P"
    records = [
        make_record("a", 1_000, "BUY", "1", "500", symbol=symbol, category="option"),
        make_record(
            "b",
            2_000,
            "SELL",
            "1",
            "0",
            symbol=symbol,
            category="option",
            transaction_type="DELIVERY",
            raw_json=json.dumps([{"deliveryPrice": "32000"}]),
        ),
    ]

    result = replay_records(records, LedgerState())

    delivered = result.records[1].calculated
    assert delivered is not None
    assert delivered.realized_pnl == Decimal("-500")


def test_delivery_position_overrides_reported_size(make_record) -> None:
    symbol = "ETH-28MAR25-2000-C"
    opened = make_record("a", 1_000, "BUY", "3", "10", symbol=symbol, category="option")
    delivery = make_record(
        "b", 2_000, "SELL", "1", "0", symbol=symbol, category="option", transaction_type="DELIVERY"
    )
    delivery = replace(
        delivery,
        delivery=DeliveryDetails(position=Decimal("-3"), delivery_price=Decimal("2100")),
    )

    result = replay_records([opened, delivery], LedgerState())

    calculated = result.records[1].calculated
    assert calculated is not None
    assert calculated.size_after == 0
    assert calculated.realized_pnl == Decimal("270")


def test_malformed_delivery_payload_is_reported_not_raised(make_record) -> None:
    records = [
        make_record(
            "a",
            1_000,
            "SELL",
            "1",
            "0",
            symbol="BTC-27DEC24-30000-C",
            transaction_type="DELIVERY",
            raw_json="{not json",
        )
    ]

    result = replay_records(records, LedgerState())

    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].record_id == "a"
    assert result.diagnostics[0].reason == "payload_invalid_json"
    assert result.records[0].calculated is not None


def test_seed_replay_leaves_records_untouched(make_record) -> None:
    records = [make_record("a", 1_000, "BUY", "1", "100")]

    result = replay_records(records, LedgerState(), update_records=False)

    assert result.records[0].calculated is None
    assert result.state.position("BTCUSDT").size == Decimal("1")


def test_cumulative_is_tracked_per_settle_coin(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100", fee="1", currency="usdt"),
        make_record("b", 2_000, "BUY", "1", "100", fee="2", currency="USDC", symbol="BTCPERP"),
        make_record("c", 3_000, "BUY", "1", "100", fee="3", currency=" "),
    ]

    result = replay_records(records, LedgerState())

    assert result.state.cumulative("USDT") == Decimal("-1")
    assert result.state.cumulative("usdc") == Decimal("-2")
    assert result.state.cumulative_by_settle_coin[UNKNOWN_KEY] == Decimal("-3")


def test_ledger_state_round_trips_through_json(make_record) -> None:
    records = [
        make_record("a", 1_000, "BUY", "1", "100"),
        make_record("b", 2_000, "SELL", "3", "120.5", fee="0.25"),
    ]
    state = replay_records(records, LedgerState()).state

    restored = ledger_state_from_maps(**json.loads(json.dumps(ledger_state_to_maps(state))))

    assert restored == state
