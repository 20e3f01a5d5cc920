from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum

import pytest

from tradeledger import cli
from tradeledger.config import Settings
from tradeledger.services.ledger_store import LedgerStore


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, object]:
    code = cli.main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out)


def test_status_on_fresh_database(capsys) -> None:
    code, payload = _run(capsys, "status")

    assert code == 0
    assert payload["total_transactions"] == 0
    assert payload["registration_date_required"] is True
    assert payload["requires_recalculation"] is False


def test_set_registration_then_status(capsys) -> None:
    code, payload = _run(capsys, "set-registration", "2024-01-02")
    assert code == 0
    assert payload == {"applied": True, "registration_date": "2024-01-02"}

    _, status = _run(capsys, "status")
    assert status["registration_time_ms"] == 1704153600000
    assert status["registration_date_required"] is False


def test_sync_without_credentials_reports_configuration_error(capsys) -> None:
    code, payload = _run(capsys, "sync")

    assert code == 1
    assert payload["status"] == "configuration_error"
    assert "BYBIT_API_KEY" in payload["message"]


def test_recent_and_reports_read_stored_records(capsys, make_record) -> None:
    store = LedgerStore(db_path=Settings().state_db_path)
    store.save_trades(
        [
            make_record("a", 1_704_067_200_000, "BUY", "1", "100"),
            make_record("b", 1_704_153_600_000, "SELL", "1", "125", fee="0.5"),
        ]
    )

    code, recent = _run(capsys, "recent", "--start", "0", "--count", "5")
    assert code == 0
    assert [row["id"] for row in recent] == ["b", "a"]

    _, pnl = _run(capsys, "pnl")
    assert pnl == [{"fees": "0.5", "net_pnl": "24.5", "realized_pnl": "25", "settle_coin": "USDT"}]

    _, trades = _run(capsys, "trades", "--symbol", "btcusdt")
    assert trades[0]["calculated"]["realized_pnl"] == "25"

    _, daily = _run(capsys, "daily", "--symbol", "BTCUSDT")
    assert [row["day"] for row in daily] == ["2024-01-01", "2024-01-02"]


def test_raw_prints_empty_array_for_unknown_symbol(capsys) -> None:
    code, payload = _run(capsys, "raw", "--symbol", "NOPE")

    assert code == 0
    assert payload == []


def test_recalc_on_empty_ledger(capsys) -> None:
    code, payload = _run(capsys, "recalc", "--from", "2024-01-01")

    assert code == 0
    assert payload["status"] == "completed"


def test_invalid_configuration_exits_with_code_2(monkeypatch, capsys) -> None:
    monkeypatch.setenv("SYNC_PAGE_LIMIT", "500")

    assert cli.main(["status"]) == 2
    assert "SYNC_PAGE_LIMIT" in capsys.readouterr().err


def test_bad_date_is_rejected_by_argparse() -> None:
    with pytest.raises(SystemExit):
        cli.main(["recalc", "--from", "yesterday"])


class _Color(StrEnum):
    RED = "red"


@dataclass(frozen=True)
class _Row:
    amount: Decimal
    color: _Color
    day: date


def test_to_jsonable_handles_domain_values() -> None:
    assert cli.to_jsonable([_Row(Decimal("1.500"), _Color.RED, date(2024, 1, 1))]) == [
        {"amount": "1.5", "color": "red", "day": "2024-01-01"}
    ]
