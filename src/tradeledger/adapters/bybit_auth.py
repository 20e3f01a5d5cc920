from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlencode


@dataclass
class MonotonicTimestampGenerator:
    now_ms_fn: Callable[[], int] = field(default_factory=lambda: (lambda: int(time.time() * 1000)))
    _last_stamp_ms: int | None = None

    def next_stamp_ms(self) -> int:
        now_ms = int(self.now_ms_fn())
        if self._last_stamp_ms is not None:
            now_ms = max(now_ms, self._last_stamp_ms + 1)
        self._last_stamp_ms = now_ms
        return now_ms


def build_query_string(params: dict[str, str | int] | None) -> str:
    """Canonical query string; the exact same string is signed and sent."""
    if not params:
        return ""
    return urlencode([(key, str(value)) for key, value in params.items() if value is not None])


def compute_signature(
    *,
    api_key: str,
    api_secret: str,
    timestamp_ms: int | str,
    recv_window_ms: int | str,
    payload: str,
) -> str:
    message = f"{timestamp_ms}{api_key}{recv_window_ms}{payload}".encode()
    return hmac.new(api_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_auth_headers(
    *,
    api_key: str,
    api_secret: str,
    timestamp_ms: int | str,
    recv_window_ms: int | str,
    payload: str,
) -> dict[str, str]:
    stamp = str(timestamp_ms)
    window = str(recv_window_ms)
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-TIMESTAMP": stamp,
        "X-BAPI-RECV-WINDOW": window,
        "X-BAPI-SIGN-TYPE": "2",
        "X-BAPI-SIGN": compute_signature(
            api_key=api_key,
            api_secret=api_secret,
            timestamp_ms=stamp,
            recv_window_ms=window,
            payload=payload,
        ),
    }
