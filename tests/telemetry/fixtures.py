# tests/telemetry/fixtures.py
"""Reusable test helpers for telemetry testing.

These helpers provide:
1. InMemoryExporter - exporter that captures batches for verification
2. make_span / make_metric / make_log - finished-signal builders
3. fast_settings - TelemetrySettings tuned for quick test pipelines
4. wait_until - polling helper for background-thread assertions
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from spanline.contracts.attributes import clean_attributes, freeze_attributes
from spanline.contracts.context import TraceContext
from spanline.contracts.enums import ExportResult, InstrumentKind, Severity, SpanKind
from spanline.contracts.signals import Batch, InstrumentationScope, LogRecord, MetricPoint, Signal, SpanData
from spanline.core.config import TelemetrySettings

TEST_SCOPE = InstrumentationScope("tests", "1.0")

_span_ids = itertools.count(1)


class InMemoryExporter:
    """In-memory exporter that captures batches for test verification.

    Implements ExporterProtocol. Results are taken from `results` in order;
    once exhausted, every call returns `default_result`.

    Example:
        exporter = InMemoryExporter(results=[ExportResult.RETRYABLE] * 3)
        scheduler = BatchScheduler(SignalType.TRACES, exporter, resource, config)
        ...
        exporter.wait_for_batches(1)
        assert exporter.delivered_items == [span]
    """

    _name = "memory"

    def __init__(
        self,
        results: Iterable[ExportResult] = (),
        *,
        default_result: ExportResult = ExportResult.SUCCESS,
        delay: float = 0.0,
        raise_error: Exception | None = None,
    ) -> None:
        self._results = list(results)
        self._default_result = default_result
        self._delay = delay
        self._raise_error = raise_error
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self.attempts: list[Batch] = []
        self.delivered: list[Batch] = []
        self.timeouts: list[float] = []
        self.configured_with: dict[str, Any] | None = None
        self.shutdown_count = 0
        self.release = threading.Event()
        self.release.set()

    @property
    def name(self) -> str:
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        self.configured_with = config

    def export(self, batch: Batch, timeout: float) -> ExportResult:
        # Blocks while a test holds release cleared (simulates a hung collector)
        self.release.wait(timeout)
        if self._delay:
            time.sleep(self._delay)
        with self._changed:
            self.attempts.append(batch)
            self.timeouts.append(timeout)
            if self._raise_error is not None:
                self._changed.notify_all()
                raise self._raise_error
            result = self._results.pop(0) if self._results else self._default_result
            if result == ExportResult.SUCCESS:
                self.delivered.append(batch)
            self._changed.notify_all()
            return result

    def shutdown(self) -> None:
        with self._lock:
            self.shutdown_count += 1
        self.release.set()

    # =========================================================================
    # Assertion Helpers
    # =========================================================================

    def wait_for_batches(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count batches were delivered."""
        deadline = time.monotonic() + timeout
        with self._changed:
            while len(self.delivered) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(remaining)
            return True

    def wait_for_attempts(self, count: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._changed:
            while len(self.attempts) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(remaining)
            return True

    @property
    def delivered_items(self) -> list[Signal]:
        with self._lock:
            return [item for batch in self.delivered for item in batch.items]

    def items_of(self, signal_type: Any) -> list[Signal]:
        with self._lock:
            return [item for batch in self.delivered if batch.signal_type == signal_type for item in batch.items]


def make_span(
    name: str = "op",
    *,
    attributes: dict[str, Any] | None = None,
    start_time: int = 1_000,
    end_time: int = 2_000,
    context: TraceContext | None = None,
) -> SpanData:
    """Create a finished SpanData with a unique span id."""
    return SpanData(
        name=name,
        context=context or TraceContext(trace_id=0xABC, span_id=next(_span_ids)),
        kind=SpanKind.INTERNAL,
        start_time=start_time,
        end_time=end_time,
        scope=TEST_SCOPE,
        attributes=freeze_attributes(clean_attributes(attributes)),
    )


def make_metric(
    name: str = "requests",
    value: int | float = 1,
    *,
    kind: InstrumentKind = InstrumentKind.COUNTER,
    attributes: dict[str, Any] | None = None,
) -> MetricPoint:
    return MetricPoint(
        instrument_name=name,
        kind=kind,
        value=value,
        start_time=1_000,
        timestamp=2_000,
        scope=TEST_SCOPE,
        attributes=freeze_attributes(clean_attributes(attributes)),
    )


def make_log(body: str = "hello", *, attributes: dict[str, Any] | None = None) -> LogRecord:
    return LogRecord(
        timestamp=1_000,
        severity=Severity.INFO,
        body=body,
        scope=TEST_SCOPE,
        attributes=freeze_attributes(clean_attributes(attributes)),
    )


def fast_settings(**overrides: Any) -> TelemetrySettings:
    """Settings for quick in-process pipelines.

    Short batch delay, no environment detection, no process hooks, no
    processors unless overridden.
    """
    data: dict[str, Any] = {
        "service": {"name": "test-service", "detect_environment": False},
        "exporter": {"protocol": "console"},
        "batch": {"max_batch_size": 16, "max_delay_seconds": 0.2, "max_queue_size": 256},
        "retry": {"max_retries": 2, "initial_backoff_seconds": 0.01, "max_backoff_seconds": 0.02},
        "processors": {"enabled": []},
        "shutdown_timeout_seconds": 2.0,
        "metric_export_interval_seconds": 60.0,
        "install_shutdown_hooks": False,
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return TelemetrySettings.model_validate(data)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it returns True or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
