from __future__ import annotations

import atexit
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

SERVICE_NAME = "tradeledger"


class LedgerInstrumentation:
    """Ledger metrics and spans; the base class records nothing."""

    @contextmanager
    def rest_call(self, *, method: str, path: str) -> Iterator[None]:
        del method, path
        yield

    def rest_response(self, *, path: str, status_code: int) -> None:
        return None

    def rest_retry(self, *, path: str) -> None:
        return None

    def sync_window(self, *, category: str, items: int) -> None:
        return None

    def sync_finished(self, *, direction: str, status: str, duration_seconds: float) -> None:
        return None

    def recalculation_finished(
        self, *, partial: bool, records_replayed: int, duration_seconds: float
    ) -> None:
        return None

    def shutdown(self) -> None:
        return None


class OTelLedgerInstrumentation(LedgerInstrumentation):
    def __init__(self, *, metrics_exporter: str, otlp_endpoint: str | None) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": SERVICE_NAME})

        span_exporter = (
            OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter()
        )
        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(SERVICE_NAME)

        metric_readers = []
        if metrics_exporter == "otlp":
            metric_exporter = (
                OTLPMetricExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPMetricExporter()
            )
            metric_readers.append(PeriodicExportingMetricReader(metric_exporter))
        self._metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        metrics.set_meter_provider(self._metric_provider)
        meter = metrics.get_meter(SERVICE_NAME)

        self._rest_requests = meter.create_counter(
            "bybit_rest_requests_total", description="Bybit REST responses by path and status"
        )
        self._rest_retries = meter.create_counter("bybit_rest_retries_total")
        self._sync_windows = meter.create_counter(
            "ledger_sync_windows_total", description="Forward sync windows drained"
        )
        self._sync_items = meter.create_counter("ledger_sync_items_total")
        self._sync_duration = meter.create_histogram("ledger_sync_duration_seconds", unit="s")
        self._records_replayed = meter.create_counter("ledger_records_replayed_total")
        self._recalculation_duration = meter.create_histogram(
            "ledger_recalculation_seconds", unit="s"
        )

    @contextmanager
    def rest_call(self, *, method: str, path: str) -> Iterator[None]:
        with self._tracer.start_as_current_span("bybit_rest_call") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("bybit.path", path)
            yield

    def rest_response(self, *, path: str, status_code: int) -> None:
        self._rest_requests.add(1, {"path": path, "status": str(status_code)})

    def rest_retry(self, *, path: str) -> None:
        self._rest_retries.add(1, {"path": path})

    def sync_window(self, *, category: str, items: int) -> None:
        attrs: dict[str, Any] = {"category": category}
        self._sync_windows.add(1, attrs)
        self._sync_items.add(items, attrs)

    def sync_finished(self, *, direction: str, status: str, duration_seconds: float) -> None:
        self._sync_duration.record(duration_seconds, {"direction": direction, "status": status})

    def recalculation_finished(
        self, *, partial: bool, records_replayed: int, duration_seconds: float
    ) -> None:
        attrs = {"mode": "partial" if partial else "full"}
        self._records_replayed.add(records_replayed, attrs)
        self._recalculation_duration.record(duration_seconds, attrs)

    def shutdown(self) -> None:
        self._metric_provider.force_flush()
        self._trace_provider.force_flush()
        self._metric_provider.shutdown()
        self._trace_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: LedgerInstrumentation = LedgerInstrumentation()
_CONFIGURED_ONCE = False


def configure_instrumentation(
    *,
    enabled: bool,
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
) -> LedgerInstrumentation:
    global _INSTRUMENTATION, _CONFIGURED_ONCE
    with _LOCK:
        if _CONFIGURED_ONCE:
            return _INSTRUMENTATION
        _CONFIGURED_ONCE = True
        if not enabled:
            return _INSTRUMENTATION
        try:
            _INSTRUMENTATION = OTelLedgerInstrumentation(
                metrics_exporter=metrics_exporter, otlp_endpoint=otlp_endpoint
            )
        except Exception:  # noqa: BLE001
            logger.exception("observability_setup_failed_falling_back_to_noop")
            _INSTRUMENTATION = LedgerInstrumentation()
        return _INSTRUMENTATION


def get_instrumentation() -> LedgerInstrumentation:
    return _INSTRUMENTATION


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
