from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trading_history_entries (
            id TEXT PRIMARY KEY,
            timestamp INTEGER NOT NULL,
            symbol TEXT NOT NULL,
            category TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            side TEXT NOT NULL,
            size TEXT NOT NULL,
            price TEXT NOT NULL,
            fee TEXT NOT NULL,
            currency TEXT NOT NULL,
            change TEXT,
            cash_flow TEXT,
            order_id TEXT,
            order_link_id TEXT,
            trade_id TEXT,
            raw_json TEXT,
            changed_at INTEGER,
            calc_size_after TEXT,
            calc_avg_price_after TEXT,
            calc_realized_pnl TEXT,
            calc_cumulative_pnl TEXT
        )
        """
    )
    columns = {
        str(row["name"]) for row in conn.execute("PRAGMA table_info(trading_history_entries)")
    }
    for column in ("delivery_position", "delivery_price", "delivery_strike"):
        if column not in columns:
            conn.execute(f"ALTER TABLE trading_history_entries ADD COLUMN {column} TEXT")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trading_history_ts ON trading_history_entries(timestamp)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_trading_history_symbol_ts
        ON trading_history_entries(symbol, timestamp)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_trading_history_symbol_category_ts
        ON trading_history_entries(symbol, category, timestamp)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trading_history_meta (
            key TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trading_daily_summaries (
            key TEXT PRIMARY KEY,
            day TEXT NOT NULL,
            symbol_key TEXT NOT NULL,
            symbol TEXT NOT NULL,
            category TEXT NOT NULL,
            total_size TEXT NOT NULL,
            total_value TEXT NOT NULL,
            total_fee TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_trading_daily_summaries_symbol_day
        ON trading_daily_summaries(symbol_key, day)
        """
    )
