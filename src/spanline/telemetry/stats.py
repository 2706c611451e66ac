# src/spanline/telemetry/stats.py
"""Internal counters for pipeline diagnostics.

These are plain in-process counters, deliberately outside the telemetry
pipeline: recording an export failure must never enqueue new telemetry.
Read them through TelemetryProvider.health_metrics or PipelineStats.snapshot().

Thread Safety:
    Counters are updated from producer threads (drops, processor errors) and
    from worker threads (export outcomes). Every update takes the lock;
    snapshot() returns a consistent copy.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any

from spanline.contracts.enums import SignalType

# Counter names, kept as constants so tests and dashboards agree on spelling
SIGNALS_ENQUEUED = "signals_enqueued"
SIGNALS_EXPORTED = "signals_exported"
SIGNALS_DROPPED_OVERFLOW = "signals_dropped_overflow"
SIGNALS_DROPPED_EXPORT = "signals_dropped_export"
SIGNALS_DROPPED_SHUTDOWN = "signals_dropped_shutdown"
SIGNALS_DROPPED_CLOSED = "signals_dropped_closed"
SIGNALS_FILTERED = "signals_filtered"
BATCHES_EXPORTED = "batches_exported"
BATCHES_DROPPED = "batches_dropped"
EXPORT_RETRIES = "export_retries"
EXPORT_FAILURES = "export_failures"
PROCESSOR_ERRORS = "processor_errors"
INVALID_MEASUREMENTS = "invalid_measurements"
INTERNAL_ERRORS = "internal_errors"


class PipelineStats:
    """Per-signal-type counters.

    Example:
        stats = PipelineStats()
        stats.increment(SignalType.TRACES, SIGNALS_DROPPED_OVERFLOW)
        stats.get(SignalType.TRACES, SIGNALS_DROPPED_OVERFLOW)  # 1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[SignalType, Counter[str]] = {signal: Counter() for signal in SignalType}

    def increment(self, signal_type: SignalType, name: str, amount: int = 1) -> None:
        if amount == 0:
            return
        with self._lock:
            self._counters[signal_type][name] += amount

    def get(self, signal_type: SignalType, name: str) -> int:
        with self._lock:
            return self._counters[signal_type][name]

    def total(self, name: str) -> int:
        """Sum of one counter across all signal types."""
        with self._lock:
            return sum(counter[name] for counter in self._counters.values())

    def snapshot(self) -> dict[str, Any]:
        """Consistent copy: {signal_type: {counter: value}}."""
        with self._lock:
            return {signal.value: dict(counter) for signal, counter in self._counters.items()}
