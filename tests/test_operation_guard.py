from __future__ import annotations

import threading

import pytest

from tradeledger.services.operation_guard import OperationGuard, OperationState


def test_guard_tracks_state_and_resets_to_idle() -> None:
    guard = OperationGuard()

    with guard.try_enter(OperationState.BACKWARD_SYNCING) as entered:
        assert entered is True
        assert guard.state == OperationState.BACKWARD_SYNCING
        assert guard.is_busy

    assert guard.state == OperationState.IDLE
    assert not guard.is_busy


def test_guard_resets_after_exception() -> None:
    guard = OperationGuard()

    with pytest.raises(RuntimeError):
        with guard.try_enter(OperationState.RECALCULATING):
            raise RuntimeError("boom")

    assert guard.state == OperationState.IDLE


def test_second_caller_is_rejected_without_blocking() -> None:
    guard = OperationGuard()
    entered_other: list[bool] = []
    holding = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with guard.try_enter(OperationState.FORWARD_SYNCING):
            holding.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=_hold)
    worker.start()
    assert holding.wait(timeout=5)

    with guard.try_enter(OperationState.RECALCULATING) as entered:
        entered_other.append(entered)
    assert guard.state == OperationState.FORWARD_SYNCING

    release.set()
    worker.join(timeout=5)

    assert entered_other == [False]
    assert guard.state == OperationState.IDLE


def test_idle_is_not_an_enterable_state() -> None:
    with pytest.raises(ValueError):
        with OperationGuard().try_enter(OperationState.IDLE):
            pass
