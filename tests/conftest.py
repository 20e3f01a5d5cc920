from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

import pytest

from tradeledger.config import Settings
from tradeledger.domain.models import TradeRecord


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "ledger.sqlite"))


@pytest.fixture
def make_record():
    def _make(
        record_id: str,
        timestamp: int,
        side: str = "BUY",
        size: str = "1",
        price: str = "100",
        *,
        fee: str = "0",
        symbol: str = "BTCUSDT",
        category: str = "linear",
        transaction_type: str = "TRADE",
        currency: str = "USDT",
        raw_json: str | None = None,
    ) -> TradeRecord:
        return TradeRecord(
            id=record_id,
            timestamp=timestamp,
            symbol=symbol,
            category=category,
            transaction_type=transaction_type,
            side=side,
            size=Decimal(size),
            price=Decimal(price),
            fee=Decimal(fee),
            currency=currency,
            raw_json=raw_json,
        )

    return _make
