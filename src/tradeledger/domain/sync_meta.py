from __future__ import annotations

import json
from dataclasses import dataclass, field, replace

from tradeledger.domain.ledger import LedgerState, ledger_state_from_maps, ledger_state_to_maps

NO_MORE_CURSOR = "__END__"


@dataclass(frozen=True)
class SyncMeta:
    """Single persisted sync/recalculation record: watermarks, cursors and the ledger snapshot."""

    registration_time_ms: int | None = None
    latest_synced_time_ms_by_category: dict[str, int] = field(default_factory=dict)
    oldest_cursor_by_category: dict[str, str | None] = field(default_factory=dict)
    oldest_synced_time_ms_by_category: dict[str, int] = field(default_factory=dict)
    ledger: LedgerState = field(default_factory=LedgerState)
    calculated_through_timestamp: int | None = None
    requires_recalculation: bool = False
    last_loaded_at_ms: int | None = None

    def forward_watermark(self, category: str) -> int | None:
        return self.latest_synced_time_ms_by_category.get(category)

    def backward_cursor(self, category: str) -> str | None:
        return self.oldest_cursor_by_category.get(category)

    def is_backward_exhausted(self, category: str) -> bool:
        return self.oldest_cursor_by_category.get(category) == NO_MORE_CURSOR

    def with_forward_watermark(self, category: str, value_ms: int) -> SyncMeta:
        watermarks = dict(self.latest_synced_time_ms_by_category)
        watermarks[category] = value_ms
        return replace(self, latest_synced_time_ms_by_category=watermarks)

    def with_backward_cursor(self, category: str, cursor: str | None) -> SyncMeta:
        cursors = dict(self.oldest_cursor_by_category)
        cursors[category] = cursor
        return replace(self, oldest_cursor_by_category=cursors)

    def with_oldest_synced(self, category: str, value_ms: int) -> SyncMeta:
        oldest = dict(self.oldest_synced_time_ms_by_category)
        current = oldest.get(category)
        oldest[category] = value_ms if current is None else min(current, value_ms)
        return replace(self, oldest_synced_time_ms_by_category=oldest)


def _int_map(raw: object) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    return {str(key): int(value) for key, value in raw.items() if value is not None}


def _optional_int(raw: object) -> int | None:
    if raw is None:
        return None
    return int(raw)


def serialize_sync_meta(meta: SyncMeta) -> str:
    payload = {
        "registration_time_ms": meta.registration_time_ms,
        "latest_synced_time_ms_by_category": dict(
            sorted(meta.latest_synced_time_ms_by_category.items())
        ),
        "oldest_cursor_by_category": dict(sorted(meta.oldest_cursor_by_category.items())),
        "oldest_synced_time_ms_by_category": dict(
            sorted(meta.oldest_synced_time_ms_by_category.items())
        ),
        **ledger_state_to_maps(meta.ledger),
        "calculated_through_timestamp": meta.calculated_through_timestamp,
        "requires_recalculation": meta.requires_recalculation,
        "last_loaded_at_ms": meta.last_loaded_at_ms,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def deserialize_sync_meta(payload: str) -> SyncMeta:
    raw = json.loads(payload)
    if not isinstance(raw, dict):
        raise ValueError("sync_meta_payload_not_object")
    cursors_raw = raw.get("oldest_cursor_by_category") or {}
    cursors = {
        str(key): (str(value) if value is not None else None) for key, value in cursors_raw.items()
    }
    return SyncMeta(
        registration_time_ms=_optional_int(raw.get("registration_time_ms")),
        latest_synced_time_ms_by_category=_int_map(raw.get("latest_synced_time_ms_by_category")),
        oldest_cursor_by_category=cursors,
        oldest_synced_time_ms_by_category=_int_map(raw.get("oldest_synced_time_ms_by_category")),
        ledger=ledger_state_from_maps(
            raw.get("size_by_symbol") or {},
            raw.get("avg_price_by_symbol") or {},
            raw.get("cumulative_by_settle_coin") or {},
        ),
        calculated_through_timestamp=_optional_int(raw.get("calculated_through_timestamp")),
        requires_recalculation=bool(raw.get("requires_recalculation", False)),
        last_loaded_at_ms=_optional_int(raw.get("last_loaded_at_ms")),
    )
