from __future__ import annotations

from typing import Protocol

from tradeledger.domain.models import TransactionPage


class TransactionSource(Protocol):
    def has_credentials(self) -> bool: ...

    def get_transaction_log(
        self,
        *,
        category: str,
        limit: int = 100,
        account_type: str = "UNIFIED",
        cursor: str | None = None,
        start_time_ms: int | None = None,
        end_time_ms: int | None = None,
    ) -> TransactionPage: ...
