from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum

logger = logging.getLogger(__name__)


class OperationState(StrEnum):
    IDLE = "idle"
    FORWARD_SYNCING = "forward_syncing"
    BACKWARD_SYNCING = "backward_syncing"
    RECALCULATING = "recalculating"
    UPDATING_SETTINGS = "updating_settings"


class OperationGuard:
    """Mutual exclusion for ledger mutations.

    ``try_enter`` never blocks: when another operation is in flight it yields ``False``
    and the caller treats the request as a no-op.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = OperationState.IDLE

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state != OperationState.IDLE

    @contextmanager
    def try_enter(self, target: OperationState) -> Iterator[bool]:
        if target == OperationState.IDLE:
            raise ValueError("cannot enter idle state")
        if not self._lock.acquire(blocking=False):
            logger.info(
                "operation_skipped_busy",
                extra={"extra": {"requested": target.value, "current": self._state.value}},
            )
            yield False
            return
        self._state = target
        try:
            yield True
        finally:
            self._state = OperationState.IDLE
            self._lock.release()
