from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import ValidationError

from tradeledger.config import Settings
from tradeledger.domain.money_policy import format_decimal
from tradeledger.logging_utils import setup_logging
from tradeledger.observability import configure_instrumentation, shutdown_instrumentation
from tradeledger.services.trading_history_service import TradingHistoryService

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def _non_negative_int(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradeledger",
        description="Bybit transaction ledger with weighted-average cost basis and realized PnL.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="Fetch new transactions since the last watermark")
    subparsers.add_parser("load-older", help="Fetch one older page per category")

    recalc = subparsers.add_parser("recalc", help="Recompute calculated fields")
    recalc.add_argument(
        "--from",
        dest="from_date",
        type=_parse_date,
        default=None,
        help="Only replay records on or after this UTC date (YYYY-MM-DD)",
    )

    registration = subparsers.add_parser(
        "set-registration", help="Set the account registration date used as the sync floor"
    )
    registration.add_argument("date", type=_parse_date)

    subparsers.add_parser("summary", help="Per category/symbol/coin totals")
    subparsers.add_parser("pnl", help="Realized PnL per settle coin")
    subparsers.add_parser("chart", help="Daily realized PnL for the last 30 UTC days")

    daily = subparsers.add_parser("daily", help="Per symbol and UTC day volume")
    daily.add_argument("--symbol", default=None)

    trades = subparsers.add_parser("trades", help="Replayed trades for one symbol, newest first")
    trades.add_argument("--symbol", required=True)
    trades.add_argument("--category", default=None)

    raw = subparsers.add_parser("raw", help="Original exchange payloads for one symbol")
    raw.add_argument("--symbol", required=True)
    raw.add_argument("--category", default=None)

    recent = subparsers.add_parser("recent", help="Newest-first page of stored records")
    recent.add_argument("--start", type=_non_negative_int, default=0)
    recent.add_argument("--count", type=_non_negative_int, default=20)

    subparsers.add_parser("status", help="Counts, watermarks and recalculation state")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
    )
    logger.info("cli_command_started", extra={"extra": {"command": args.command}})

    service = TradingHistoryService.build(settings)
    try:
        return run_command(service, args)
    finally:
        _close_best_effort(service, "trading history service")
        shutdown_instrumentation()


def run_command(service: TradingHistoryService, args: argparse.Namespace) -> int:
    if args.command == "sync":
        result = service.load_latest()
        _emit(result)
        return 0 if result.ok else 1
    if args.command == "load-older":
        result = service.load_older()
        _emit(result)
        return 0 if result.ok else 1
    if args.command == "recalc":
        _emit(service.recalculate(args.from_date))
        return 0
    if args.command == "set-registration":
        applied = service.set_registration_date(args.date)
        _emit({"registration_date": args.date, "applied": applied})
        return 0 if applied else 1
    if args.command == "summary":
        _emit(service.get_summary_by_symbol())
        return 0
    if args.command == "pnl":
        _emit(service.get_realized_pnl_by_settle_coin())
        return 0
    if args.command == "chart":
        _emit(service.get_daily_realized_pnl_chart())
        return 0
    if args.command == "daily":
        _emit(service.get_daily_summaries(args.symbol))
        return 0
    if args.command == "trades":
        _emit(service.get_trades_for_symbol(args.symbol, args.category))
        return 0
    if args.command == "raw":
        payload = service.get_raw_json_for_symbol(args.symbol, args.category)
        print(payload if payload else "[]")
        return 0
    if args.command == "recent":
        service.ensure_range(args.start, args.count)
        _emit(service.get_range(args.start, args.count))
        return 0
    if args.command == "status":
        return run_status(service)
    raise ValueError(f"unknown command: {args.command}")


def run_status(service: TradingHistoryService) -> int:
    meta = service.store.load_meta()
    _emit(
        {
            "total_transactions": service.total_transactions_count,
            "uncalculated_transactions": service.store.count_uncalculated(),
            "registration_date_required": service.is_registration_date_required,
            "registration_time_ms": meta.registration_time_ms,
            "last_loaded_at": service.last_loaded_at,
            "forward_watermarks": meta.latest_synced_time_ms_by_category,
            "backward_cursors": meta.oldest_cursor_by_category,
            "oldest_synced": meta.oldest_synced_time_ms_by_category,
            "calculated_through_timestamp": meta.calculated_through_timestamp,
            "requires_recalculation": meta.requires_recalculation,
            "cumulative_pnl_by_settle_coin": meta.ledger.cumulative_by_settle_coin,
        }
    )
    return 0


def to_jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return format_decimal(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def _emit(payload: object) -> None:
    print(json.dumps(to_jsonable(payload), sort_keys=True, indent=2))


def _close_best_effort(resource: object, label: str) -> None:
    close = getattr(resource, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:  # noqa: BLE001
        logger.warning(
            "Failed to close resource", extra={"extra": {"resource": label}}, exc_info=True
        )


if __name__ == "__main__":
    raise SystemExit(main())
