from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from tradeledger.domain.models import Calculated, DailySummary, DeliveryDetails, TradeRecord
from tradeledger.domain.money_policy import format_decimal
from tradeledger.domain.sync_meta import SyncMeta, deserialize_sync_meta, serialize_sync_meta
from tradeledger.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_ledger_schema,
)

logger = logging.getLogger(__name__)

META_STATE_KEY = "state"

_ENTRY_COLUMNS = (
    "id",
    "timestamp",
    "symbol",
    "category",
    "transaction_type",
    "side",
    "size",
    "price",
    "fee",
    "currency",
    "change",
    "cash_flow",
    "order_id",
    "order_link_id",
    "trade_id",
    "raw_json",
    "changed_at",
    "calc_size_after",
    "calc_avg_price_after",
    "calc_realized_pnl",
    "calc_cumulative_pnl",
    "delivery_position",
    "delivery_price",
    "delivery_strike",
)

_UPSERT_SQL = (
    f"INSERT INTO trading_history_entries ({', '.join(_ENTRY_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _ENTRY_COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _ENTRY_COLUMNS if column != "id")
)


def _decimal_or_none(value: object) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _text_or_none(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format_decimal(value)


def _now_ms() -> int:
    return int(time.time() * 1000)


def prepare_record(record: TradeRecord, *, now_ms: int | None = None) -> TradeRecord:
    """Fill in a generated id and a current timestamp where the exchange gave none."""
    updates: dict[str, object] = {}
    if not record.id or not record.id.strip():
        updates["id"] = uuid4().hex
    if record.timestamp <= 0:
        updates["timestamp"] = now_ms if now_ms is not None else _now_ms()
    if not updates:
        return record
    return replace(record, **updates)


def _record_to_row(record: TradeRecord) -> tuple[object, ...]:
    calculated = record.calculated or Calculated()
    delivery = record.delivery or DeliveryDetails()
    return (
        record.id,
        record.timestamp,
        record.symbol,
        record.category,
        record.transaction_type,
        record.side,
        format_decimal(record.size),
        format_decimal(record.price),
        format_decimal(record.fee),
        record.currency,
        _text_or_none(record.change),
        _text_or_none(record.cash_flow),
        record.order_id,
        record.order_link_id,
        record.trade_id,
        record.raw_json,
        record.changed_at,
        _text_or_none(calculated.size_after),
        _text_or_none(calculated.avg_price_after),
        _text_or_none(calculated.realized_pnl),
        _text_or_none(calculated.cumulative_pnl),
        _text_or_none(delivery.position),
        _text_or_none(delivery.delivery_price),
        _text_or_none(delivery.strike),
    )


def _row_to_record(row: sqlite3.Row) -> TradeRecord:
    calculated = Calculated(
        size_after=_decimal_or_none(row["calc_size_after"]),
        avg_price_after=_decimal_or_none(row["calc_avg_price_after"]),
        realized_pnl=_decimal_or_none(row["calc_realized_pnl"]),
        cumulative_pnl=_decimal_or_none(row["calc_cumulative_pnl"]),
    )
    delivery = DeliveryDetails(
        position=_decimal_or_none(row["delivery_position"]),
        delivery_price=_decimal_or_none(row["delivery_price"]),
        strike=_decimal_or_none(row["delivery_strike"]),
    )
    return TradeRecord(
        id=str(row["id"]),
        timestamp=int(row["timestamp"]),
        symbol=str(row["symbol"]),
        category=str(row["category"]),
        transaction_type=str(row["transaction_type"]),
        side=str(row["side"]),
        size=Decimal(str(row["size"])),
        price=Decimal(str(row["price"])),
        fee=Decimal(str(row["fee"])),
        currency=str(row["currency"]),
        change=_decimal_or_none(row["change"]),
        cash_flow=_decimal_or_none(row["cash_flow"]),
        order_id=row["order_id"],
        order_link_id=row["order_link_id"],
        trade_id=row["trade_id"],
        raw_json=row["raw_json"],
        delivery=None if delivery == DeliveryDetails() else delivery,
        calculated=None if calculated.is_empty() else calculated,
        changed_at=int(row["changed_at"]) if row["changed_at"] is not None else None,
    )


class LedgerStore:
    """SQLite-backed trade ledger: records upserted by id plus one sync meta document."""

    def __init__(self, db_path: str = "tradeledger_state.db") -> None:
        self.db_path = db_path
        self.db_path_abs = (
            db_path if db_path == ":memory:" else str(Path(db_path).expanduser().resolve())
        )
        self._lock = threading.RLock()
        self._transaction_conn: sqlite3.Connection | None = None
        self._transaction_owner: int | None = None
        self._shared_conn: sqlite3.Connection | None = None
        with self._connect() as conn:
            ensure_ledger_schema(conn)
        logger.info("ledger_store_startup", extra={"extra": {"db_path": self.db_path_abs}})

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        tx_conn = self._transaction_conn
        if tx_conn is not None and self._transaction_owner == threading.get_ident():
            yield tx_conn
            return
        if self.db_path == ":memory:":
            with self._lock:
                if self._shared_conn is None:
                    self._shared_conn = create_sqlite_connection(self.db_path)
                yield self._shared_conn
                self._shared_conn.commit()
            return
        conn = create_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._transaction_conn is not None:
                yield self._transaction_conn
                return
            if self.db_path == ":memory:":
                if self._shared_conn is None:
                    self._shared_conn = create_sqlite_connection(self.db_path)
                conn = self._shared_conn
            else:
                conn = create_sqlite_connection(self.db_path)
            conn.execute("BEGIN IMMEDIATE")
            self._transaction_conn = conn
            self._transaction_owner = threading.get_ident()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._transaction_conn = None
                self._transaction_owner = None
                if conn is not self._shared_conn:
                    conn.close()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    def load_meta(self) -> SyncMeta:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM trading_history_meta WHERE key = ?", (META_STATE_KEY,)
            ).fetchone()
        if row is None:
            return SyncMeta()
        try:
            return deserialize_sync_meta(str(row["payload"]))
        except (TypeError, ValueError, ArithmeticError) as exc:
            logger.warning(
                "ledger_meta_restore_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
            return SyncMeta(requires_recalculation=True)

    def _write_meta(self, conn: sqlite3.Connection, meta: SyncMeta) -> None:
        conn.execute(
            """
            INSERT INTO trading_history_meta(key, payload, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (META_STATE_KEY, serialize_sync_meta(meta), datetime.now(UTC).isoformat()),
        )

    def save_meta(self, meta: SyncMeta) -> None:
        with self.transaction() as conn:
            self._write_meta(conn, meta)

    def existing_ids(self, ids: Sequence[str]) -> set[str]:
        found: set[str] = set()
        unique_ids = list(dict.fromkeys(ids))
        with self._connect() as conn:
            for offset in range(0, len(unique_ids), 500):
                chunk = unique_ids[offset : offset + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT id FROM trading_history_entries WHERE id IN ({placeholders})",
                    chunk,
                ).fetchall()
                found.update(str(row["id"]) for row in rows)
        return found

    def save_trades(self, records: Sequence[TradeRecord], meta: SyncMeta | None = None) -> int:
        """Upsert records by id, optionally saving ``meta`` in the same transaction.

        Returns how many ids were not stored before.
        """
        prepared = [prepare_record(record) for record in records]
        with self.transaction() as conn:
            already = self.existing_ids([record.id for record in prepared])
            conn.executemany(_UPSERT_SQL, [_record_to_row(record) for record in prepared])
            if meta is not None:
                self._write_meta(conn, meta)
        inserted = len({record.id for record in prepared} - already)
        logger.debug(
            "ledger_trades_saved",
            extra={"extra": {"attempted": len(prepared), "inserted": inserted}},
        )
        return inserted

    def _select(self, where: str = "", params: Sequence[object] = (), suffix: str = "") -> list[TradeRecord]:
        sql = f"SELECT {', '.join(_ENTRY_COLUMNS)} FROM trading_history_entries"
        if where:
            sql += f" WHERE {where}"
        if suffix:
            sql += f" {suffix}"
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_record(row) for row in rows]

    def load_all_ascending(self) -> list[TradeRecord]:
        return self._select(suffix="ORDER BY timestamp ASC, id ASC")

    def load_latest(self, limit: int) -> list[TradeRecord]:
        return self._select(suffix="ORDER BY timestamp DESC, id DESC LIMIT ?", params=(max(0, limit),))

    def load_before(
        self, timestamp: int | None, record_id: str | None, limit: int
    ) -> list[TradeRecord]:
        if timestamp is None:
            return self.load_latest(limit)
        if record_id is None:
            return self._select(
                "timestamp < ?",
                (timestamp, max(0, limit)),
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
            )
        return self._select(
            "(timestamp < ? OR (timestamp = ? AND id < ?))",
            (timestamp, timestamp, record_id, max(0, limit)),
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
        )

    def load_by_symbol(self, symbol: str, category: str | None = None) -> list[TradeRecord]:
        if category:
            return self._select(
                "symbol = ? COLLATE NOCASE AND category = ? COLLATE NOCASE",
                (symbol, category),
                "ORDER BY timestamp ASC, id ASC",
            )
        return self._select("symbol = ? COLLATE NOCASE", (symbol,), "ORDER BY timestamp ASC, id ASC")

    def get_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM trading_history_entries").fetchone()
        return int(row["n"]) if row is not None else 0

    def count_uncalculated(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM trading_history_entries
                WHERE calc_size_after IS NULL
                  AND calc_avg_price_after IS NULL
                  AND calc_realized_pnl IS NULL
                  AND calc_cumulative_pnl IS NULL
                """
            ).fetchone()
        return int(row["n"]) if row is not None else 0

    def save_daily_summaries(self, summaries: Sequence[DailySummary]) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM trading_daily_summaries")
            conn.executemany(
                """
                INSERT INTO trading_daily_summaries(
                    key, day, symbol_key, symbol, category, total_size, total_value, total_fee
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        summary.key,
                        summary.day,
                        summary.symbol_key,
                        summary.symbol,
                        summary.category,
                        format_decimal(summary.total_size),
                        format_decimal(summary.total_value),
                        format_decimal(summary.total_fee),
                    )
                    for summary in summaries
                ],
            )

    def load_daily_summaries(self, symbol: str | None = None) -> list[DailySummary]:
        sql = (
            "SELECT key, day, symbol_key, symbol, category, total_size, total_value, total_fee "
            "FROM trading_daily_summaries"
        )
        params: tuple[object, ...] = ()
        if symbol:
            sql += " WHERE symbol_key = ?"
            params = (symbol.strip().upper(),)
        sql += " ORDER BY day ASC, symbol_key ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            DailySummary(
                key=str(row["key"]),
                day=str(row["day"]),
                symbol_key=str(row["symbol_key"]),
                symbol=str(row["symbol"]),
                category=str(row["category"]),
                total_size=Decimal(str(row["total_size"])),
                total_value=Decimal(str(row["total_value"])),
                total_fee=Decimal(str(row["total_fee"])),
            )
            for row in rows
        ]

    def load_by_ids(self, ids: Sequence[str]) -> dict[str, TradeRecord]:
        found: dict[str, TradeRecord] = {}
        unique_ids = list(dict.fromkeys(ids))
        for offset in range(0, len(unique_ids), 500):
            chunk = unique_ids[offset : offset + 500]
            placeholders = ", ".join("?" for _ in chunk)
            for record in self._select(f"id IN ({placeholders})", chunk):
                found[record.id] = record
        return found
