from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tradeledger.services.retry import (
    RetryAttempt,
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
)


class _RateError(Exception):
    pass


def test_parse_retry_after_seconds_supports_http_date() -> None:
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


def test_parse_retry_after_seconds_rejects_garbage() -> None:
    assert parse_retry_after_seconds(None) is None
    assert parse_retry_after_seconds(" ") is None
    assert parse_retry_after_seconds("-1") is None
    assert parse_retry_after_seconds("soon") is None
    assert parse_retry_after_seconds("1.5") == 1.5


def test_retry_with_backoff_honors_max_total_sleep() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _RateError("x")

    with pytest.raises(_RateError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(
                max_attempts=5,
                base_delay_ms=100,
                max_delay_ms=1000,
                max_total_sleep_seconds=0.15,
                jitter_seed=1,
            ),
            retry_on_exceptions=(_RateError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    attempts: list[RetryAttempt] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _RateError("429")
        return "ok"

    out = retry_with_backoff(
        _fn,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=5000, jitter_seed=3),
        retry_on_exceptions=(_RateError,),
        sleep_fn=slept.append,
        on_retry=attempts.append,
        retry_after_getter=lambda _exc: "2",
    )
    assert out == "ok"
    assert slept == [2.0]
    assert attempts[0].used_retry_after is True
    assert attempts[0].error_type == "_RateError"


def test_non_retryable_errors_propagate_immediately() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(),
            retry_on_exceptions=(_RateError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 1


def test_invalid_policy_is_rejected() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        retry_with_backoff(
            lambda: None, policy=RetryPolicy(max_attempts=0), retry_on_exceptions=()
        )
