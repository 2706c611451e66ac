# src/spanline/telemetry/metrics.py
"""Meters, instruments and in-process metric aggregation.

Measurements are not exported one by one. Each measurement updates an
accumulator keyed by (scope, instrument, attribute set); the
PeriodicMetricReader collects every accumulator once per
metric_export_interval and emits one MetricPoint per stream into the
metrics pipeline.

Temporality is DELTA: a collected point covers the interval since the
previous collection, and the accumulators are reset on collection.

Instrument kinds:
    Counter:   monotonic sum; negative deltas are rejected
    Histogram: explicit-bucket distribution (count/sum/min/max/buckets)
    Gauge:     last value recorded in the interval

Invalid measurements (negative counter deltas, non-numeric or non-finite
values) are counted in invalid_measurements and logged at debug level,
never raised.

Cardinality:
    Each instrument aggregates at most cardinality_limit attribute sets per
    interval. The last slot is the overflow stream (attribute
    otel.metric.overflow=true), which absorbs every measurement for an
    attribute set first seen after the other slots are taken.
"""

from __future__ import annotations

import bisect
import math
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar

from spanline.contracts.attributes import AttributeValue, clean_attributes, freeze_attributes
from spanline.contracts.defaults import DEFAULT_HISTOGRAM_BOUNDARIES, INTERNAL_DEFAULTS
from spanline.contracts.enums import InstrumentKind, SignalType
from spanline.contracts.signals import HistogramValue, InstrumentationScope, MetricPoint
from spanline.core.logging import get_logger
from spanline.telemetry.propagation import is_instrumentation_suppressed, mark_thread_suppressed
from spanline.telemetry.stats import INTERNAL_ERRORS, INVALID_MEASUREMENTS, PipelineStats

if TYPE_CHECKING:
    from spanline.telemetry.provider import TelemetryProvider

logger = get_logger(__name__)

ProviderResolver = Callable[[], "TelemetryProvider | None"]
_AttributeKey = tuple[tuple[str, AttributeValue], ...]
_InstrumentKey = tuple[InstrumentationScope, str, InstrumentKind]
_StreamKey = tuple[InstrumentationScope, str, InstrumentKind, _AttributeKey]

DEFAULT_CARDINALITY_LIMIT = int(INTERNAL_DEFAULTS["metrics"]["cardinality_limit"])

# Attribute set of the stream that absorbs measurements beyond the limit
OVERFLOW_ATTRIBUTE = "otel.metric.overflow"
_OVERFLOW_KEY: _AttributeKey = ((OVERFLOW_ATTRIBUTE, True),)


# =============================================================================
# Aggregation
# =============================================================================


class _Stream:
    """Accumulated state of one (instrument, attribute set) for one interval."""

    __slots__ = ("kind", "unit", "description", "boundaries", "total", "last", "bucket_counts", "count", "min", "max")

    def __init__(self, kind: InstrumentKind, unit: str, description: str, boundaries: tuple[float, ...]) -> None:
        self.kind = kind
        self.unit = unit
        self.description = description
        self.boundaries = boundaries
        self.total: int | float = 0
        self.last: int | float = 0
        self.bucket_counts = [0] * (len(boundaries) + 1)
        self.count = 0
        self.min = math.inf
        self.max = -math.inf

    def update(self, value: int | float) -> None:
        self.count += 1
        if self.kind == InstrumentKind.COUNTER:
            self.total += value
        elif self.kind == InstrumentKind.GAUGE:
            self.last = value
        else:
            self.total += value
            self.min = min(self.min, value)
            self.max = max(self.max, value)
            # bucket i holds (boundaries[i-1], boundaries[i]]
            self.bucket_counts[bisect.bisect_left(self.boundaries, value)] += 1

    def value(self) -> int | float | HistogramValue:
        if self.kind == InstrumentKind.COUNTER:
            return self.total
        if self.kind == InstrumentKind.GAUGE:
            return self.last
        return HistogramValue(
            boundaries=self.boundaries,
            bucket_counts=tuple(self.bucket_counts),
            count=self.count,
            sum=float(self.total),
            min=float(self.min),
            max=float(self.max),
        )


class MetricAggregator:
    """Thread-safe delta aggregation of measurements.

    Example:
        aggregator = MetricAggregator()
        aggregator.record(scope, "requests", InstrumentKind.COUNTER, 1, {"route": "/"})
        points = aggregator.collect()  # one point, value 1; state reset
    """

    def __init__(
        self,
        clock: Callable[[], int] = time.time_ns,
        *,
        cardinality_limit: int = DEFAULT_CARDINALITY_LIMIT,
    ) -> None:
        if cardinality_limit < 2:
            raise ValueError(f"cardinality_limit must be >= 2, got {cardinality_limit}")
        self._clock = clock
        self._cardinality_limit = cardinality_limit
        self._lock = threading.Lock()
        self._streams: dict[_StreamKey, _Stream] = {}
        self._stream_counts: dict[_InstrumentKey, int] = {}
        self._interval_start = clock()

    def record(
        self,
        scope: InstrumentationScope,
        name: str,
        kind: InstrumentKind,
        value: int | float,
        attributes: Mapping[str, AttributeValue],
        *,
        unit: str = "",
        description: str = "",
        boundaries: tuple[float, ...] = DEFAULT_HISTOGRAM_BOUNDARIES,
    ) -> None:
        instrument: _InstrumentKey = (scope, name, kind)
        key: _StreamKey = (*instrument, tuple(sorted(attributes.items())))
        overflowed = False
        with self._lock:
            stream = self._streams.get(key)
            if stream is None:
                count = self._stream_counts.get(instrument, 0)
                if count >= self._cardinality_limit - 1:
                    key = (*instrument, _OVERFLOW_KEY)
                    stream = self._streams.get(key)
                    overflowed = stream is None
                if stream is None:
                    stream = _Stream(kind, unit, description, boundaries)
                    self._streams[key] = stream
                    if not overflowed:
                        self._stream_counts[instrument] = count + 1
            stream.update(value)
        if overflowed:
            logger.warning(
                "Metric cardinality limit reached - new attribute sets folded into overflow stream",
                instrument=name,
                cardinality_limit=self._cardinality_limit,
            )

    def collect(self) -> list[MetricPoint]:
        """Return one point per stream for the interval ending now and reset."""
        with self._lock:
            streams, self._streams = self._streams, {}
            self._stream_counts = {}
            start_time = self._interval_start
            now = max(self._clock(), start_time)
            self._interval_start = now

        return [
            MetricPoint(
                instrument_name=name,
                kind=kind,
                value=stream.value(),
                start_time=start_time,
                timestamp=now,
                scope=scope,
                attributes=freeze_attributes(dict(attribute_key)),
                unit=stream.unit,
                description=stream.description,
            )
            for (scope, name, kind, attribute_key), stream in streams.items()
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)


# =============================================================================
# Instruments
# =============================================================================


class _Instrument:
    kind: ClassVar[InstrumentKind]

    def __init__(self, meter: Meter, name: str, unit: str = "", description: str = "") -> None:
        self._meter = meter
        self.name = name
        self.unit = unit
        self.description = description

    @property
    def boundaries(self) -> tuple[float, ...]:
        return DEFAULT_HISTOGRAM_BOUNDARIES

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, unit={self.unit!r})"


class Counter(_Instrument):
    """Monotonic sum. add() with a negative amount is rejected."""

    kind = InstrumentKind.COUNTER

    def add(self, amount: int | float = 1, attributes: Mapping[str, Any] | None = None) -> bool:
        return self._meter._measure(self, amount, attributes)


class Histogram(_Instrument):
    """Distribution of recorded values over explicit bucket boundaries."""

    kind = InstrumentKind.HISTOGRAM

    def __init__(
        self,
        meter: Meter,
        name: str,
        unit: str = "",
        description: str = "",
        boundaries: Sequence[float] | None = None,
    ) -> None:
        super().__init__(meter, name, unit, description)
        self._boundaries = tuple(sorted(boundaries)) if boundaries is not None else DEFAULT_HISTOGRAM_BOUNDARIES

    @property
    def boundaries(self) -> tuple[float, ...]:
        return self._boundaries

    def record(self, value: int | float, attributes: Mapping[str, Any] | None = None) -> bool:
        return self._meter._measure(self, value, attributes)


class Gauge(_Instrument):
    """Last value wins within a collection interval."""

    kind = InstrumentKind.GAUGE

    def set(self, value: int | float, attributes: Mapping[str, Any] | None = None) -> bool:
        return self._meter._measure(self, value, attributes)


def _invalid_reason(instrument: _Instrument, value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"value must be int or float, got {type(value).__name__}"
    if isinstance(value, float) and not math.isfinite(value):
        return "value must be finite"
    if instrument.kind == InstrumentKind.COUNTER and value < 0:
        return "counter delta must be non-negative"
    return None


class Meter:
    """Creates instruments for one instrumentation scope.

    Instruments are cached by name: creating an instrument twice returns
    the first one when the kind matches.
    """

    def __init__(self, scope: InstrumentationScope, resolve: ProviderResolver) -> None:
        self._scope = scope
        self._resolve = resolve
        self._lock = threading.Lock()
        self._instruments: dict[str, _Instrument] = {}

    @property
    def scope(self) -> InstrumentationScope:
        return self._scope

    def _get_or_create(self, cls: type[_Instrument], name: str, **kwargs: Any) -> Any:
        with self._lock:
            existing = self._instruments.get(name)
            if existing is not None and type(existing) is cls:
                return existing
            if existing is not None:
                logger.warning(
                    "Instrument name reused with a different kind",
                    instrument=name,
                    existing_kind=existing.kind.value,
                    requested_kind=cls.kind.value,
                )
            instrument = cls(self, name, **kwargs)
            self._instruments[name] = instrument
            return instrument

    def create_counter(self, name: str, unit: str = "", description: str = "") -> Counter:
        counter: Counter = self._get_or_create(Counter, name, unit=unit, description=description)
        return counter

    def create_histogram(
        self,
        name: str,
        unit: str = "",
        description: str = "",
        boundaries: Sequence[float] | None = None,
    ) -> Histogram:
        histogram: Histogram = self._get_or_create(
            Histogram, name, unit=unit, description=description, boundaries=boundaries
        )
        return histogram

    def create_gauge(self, name: str, unit: str = "", description: str = "") -> Gauge:
        gauge: Gauge = self._get_or_create(Gauge, name, unit=unit, description=description)
        return gauge

    # Shortcuts: create-or-get the instrument and record in one call

    def record_counter(self, name: str, amount: int | float = 1, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.create_counter(name).add(amount, attributes)

    def record_histogram(self, name: str, value: int | float, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.create_histogram(name).record(value, attributes)

    def record_gauge(self, name: str, value: int | float, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.create_gauge(name).set(value, attributes)

    def _measure(self, instrument: _Instrument, value: Any, attributes: Mapping[str, Any] | None) -> bool:
        """Validate and aggregate one measurement. Never raises.

        Returns:
            True if the measurement was aggregated.
        """
        provider = self._resolve()
        if provider is None or is_instrumentation_suppressed() or not provider.is_enabled(SignalType.METRICS):
            return False
        reason = _invalid_reason(instrument, value)
        if reason is not None:
            provider.stats.increment(SignalType.METRICS, INVALID_MEASUREMENTS)
            logger.debug("Rejected invalid measurement", instrument=instrument.name, reason=reason)
            return False
        try:
            provider.aggregator.record(
                self._scope,
                instrument.name,
                instrument.kind,
                value,
                clean_attributes(attributes),
                unit=instrument.unit,
                description=instrument.description,
                boundaries=instrument.boundaries,
            )
        except Exception as e:
            provider.stats.increment(SignalType.METRICS, INTERNAL_ERRORS)
            logger.error("Failed to record measurement", instrument=instrument.name, error=str(e))
            return False
        return True


# =============================================================================
# Collection
# =============================================================================


class PeriodicMetricReader:
    """Background thread that collects the aggregator every interval.

    Collected points are handed to emit (the provider's metrics pipeline).
    collect() may also be called directly (force_flush, shutdown).
    """

    def __init__(
        self,
        aggregator: MetricAggregator,
        emit: Callable[[MetricPoint], object],
        interval: float,
        *,
        stats: PipelineStats | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._aggregator = aggregator
        self._emit = emit
        self._interval = interval
        self._stats = stats
        self._stop = threading.Event()
        self._collect_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="spanline-metric-reader", daemon=True)
        self._thread.start()

    def collect(self) -> int:
        """Collect and emit now. Returns the number of points emitted."""
        with self._collect_lock:
            points = self._aggregator.collect()
            for point in points:
                self._emit(point)
        return len(points)

    def _run(self) -> None:
        mark_thread_suppressed()
        while not self._stop.wait(self._interval):
            try:
                self.collect()
            except Exception as e:
                # Log but don't crash - next interval collects again
                if self._stats is not None:
                    self._stats.increment(SignalType.METRICS, INTERNAL_ERRORS)
                logger.error("Metric collection failed", error=str(e), error_type=type(e).__name__)

    def shutdown(self, timeout: float) -> None:
        """Stop the collection thread. Does not run a final collection."""
        self._stop.set()
        self._thread.join(timeout=max(timeout, 0.0))

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()
