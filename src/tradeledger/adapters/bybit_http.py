from __future__ import annotations

import asyncio
import json
import logging
import ssl
from decimal import Decimal
from time import sleep
from uuid import uuid4

import httpx

from tradeledger.adapters.bybit_auth import (
    MonotonicTimestampGenerator,
    build_auth_headers,
    build_query_string,
)
from tradeledger.adapters.bybit_mapping import map_transaction_items
from tradeledger.domain.models import ConfigurationError, ExchangeError, TransactionPage
from tradeledger.observability import get_instrumentation
from tradeledger.security.redaction import sanitize_mapping, sanitize_text
from tradeledger.services.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

TRANSACTION_LOG_PATH = "/v5/account/transaction-log"
MAX_PAGE_LIMIT = 100

_ERROR_SNIPPET_LIMIT = 240
_DEFAULT_RETRY_POLICY = RetryPolicy()
MISSING_CREDENTIALS_MESSAGE = (
    "Bybit API credentials are missing. Configure BYBIT_API_KEY and BYBIT_API_SECRET."
)


class _RetryableStatusError(Exception):
    def __init__(self, exchange_error: ExchangeError, *, retry_after_header: str | None = None) -> None:
        super().__init__(str(exchange_error))
        self.exchange_error = exchange_error
        self.retry_after_header = retry_after_header


def _is_permanent_transport_error(exc: httpx.TransportError) -> bool:
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.ProtocolError)):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, ssl.SSLCertVerificationError)


class _TransientTransportError(Exception):
    def __init__(self, original: httpx.TransportError) -> None:
        super().__init__(str(original))
        self.original = original


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def clamp_page_limit(limit: int) -> int:
    return max(1, min(MAX_PAGE_LIMIT, int(limit)))


class BybitHttpClient:
    """Signed read-only client for the Bybit v5 transaction log."""

    BASE_URL = "https://api.bybit.com"

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        *,
        recv_window_ms: int = 5000,
        timeout: float | httpx.Timeout = 10.0,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        retry_policy: RetryPolicy = _DEFAULT_RETRY_POLICY,
        timestamps: MonotonicTimestampGenerator | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window_ms = recv_window_ms
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0, read=10.0, write=10.0, pool=5.0)
        )
        self.client = httpx.Client(
            base_url=base_url or self.BASE_URL,
            timeout=resolved_timeout,
            transport=transport,
        )
        self._retry_policy = retry_policy
        self._timestamps = timestamps or MonotonicTimestampGenerator()

    def __enter__(self) -> BybitHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _safe_sleep(self, seconds: float) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            sleep(seconds)
            return
        raise RuntimeError("Blocking retry sleep called from an active event loop")

    def _private_get(self, path: str, params: dict[str, str | int]) -> dict:
        if not self.has_credentials():
            raise ConfigurationError(MISSING_CREDENTIALS_MESSAGE)

        request_id = uuid4().hex
        query = build_query_string(params)

        def _call() -> dict:
            headers = build_auth_headers(
                api_key=self.api_key or "",
                api_secret=self.api_secret or "",
                timestamp_ms=self._timestamps.next_stamp_ms(),
                recv_window_ms=self.recv_window_ms,
                payload=query,
            )
            url = f"{path}?{query}" if query else path
            try:
                with get_instrumentation().rest_call(method="GET", path=path):
                    response = self.client.get(url, headers=headers)
            except httpx.TransportError as exc:
                if isinstance(exc, httpx.TimeoutException) or not _is_permanent_transport_error(exc):
                    raise _TransientTransportError(exc) from exc
                raise
            get_instrumentation().rest_response(path=path, status_code=response.status_code)
            if response.status_code != 200:
                snippet = _response_snippet(response)
                err = ExchangeError(
                    "Bybit endpoint error "
                    f"status={response.status_code} method=GET path={path} "
                    f"response={snippet} request_id={request_id}",
                    status_code=response.status_code,
                    request_path=path,
                    request_method="GET",
                    request_params=sanitize_mapping(dict(params)),
                )
                if response.status_code == 429 or response.status_code >= 500:
                    raise _RetryableStatusError(
                        err, retry_after_header=response.headers.get("Retry-After")
                    ) from err
                raise err

            try:
                payload = json.loads(response.text, parse_float=Decimal)
            except ValueError as exc:
                raise ExchangeError(
                    f"Bybit response is not valid JSON path={path} request_id={request_id}",
                    status_code=response.status_code,
                    request_path=path,
                    request_method="GET",
                ) from exc
            if not isinstance(payload, dict):
                raise ExchangeError("Bybit response payload must be a JSON object")
            ret_code = payload.get("retCode")
            if ret_code not in (0, "0", None):
                message = sanitize_text(str(payload.get("retMsg") or "unknown Bybit error"))
                raise ExchangeError(
                    f"Bybit API error retCode={ret_code} retMsg={message}",
                    status_code=response.status_code,
                    error_code=ret_code,
                    error_message=message,
                    request_path=path,
                    request_method="GET",
                    request_params=sanitize_mapping(dict(params)),
                )
            return payload

        def _retry_after(exc: Exception) -> str | None:
            return getattr(exc, "retry_after_header", None)

        def _on_retry(attempt: object) -> None:
            get_instrumentation().rest_retry(path=path)
            logger.warning(
                "bybit_request_retry",
                extra={"extra": {"path": path, "request_id": request_id, "attempt": attempt}},
            )

        try:
            return retry_with_backoff(
                _call,
                policy=self._retry_policy,
                retry_on_exceptions=(_RetryableStatusError, _TransientTransportError),
                retry_after_getter=_retry_after,
                on_retry=_on_retry,
                sleep_fn=self._safe_sleep,
            )
        except _RetryableStatusError as exc:
            raise exc.exchange_error from exc
        except _TransientTransportError as exc:
            raise ExchangeError(
                f"Bybit transport error path={path}: {type(exc.original).__name__}",
                request_path=path,
                request_method="GET",
            ) from exc.original

    def get_transaction_log(
        self,
        *,
        category: str,
        limit: int = MAX_PAGE_LIMIT,
        account_type: str = "UNIFIED",
        cursor: str | None = None,
        start_time_ms: int | None = None,
        end_time_ms: int | None = None,
    ) -> TransactionPage:
        params: dict[str, str | int] = {
            "accountType": account_type,
            "category": category,
            "limit": clamp_page_limit(limit),
        }
        if start_time_ms is not None:
            params["startTime"] = start_time_ms
        if end_time_ms is not None:
            params["endTime"] = end_time_ms
        if cursor:
            params["cursor"] = cursor

        payload = self._private_get(TRANSACTION_LOG_PATH, params)
        result = payload.get("result")
        if not isinstance(result, dict):
            return TransactionPage(items=[], next_cursor=None)

        next_cursor = result.get("nextPageCursor")
        if not isinstance(next_cursor, str) or not next_cursor.strip():
            next_cursor = None
        items = result.get("list")
        if not isinstance(items, list):
            return TransactionPage(items=[], next_cursor=next_cursor)
        return TransactionPage(items=map_transaction_items(items, category), next_cursor=next_cursor)
