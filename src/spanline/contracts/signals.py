"""Finished-signal dataclasses that flow from producers to exporters.

These are the immutable records owned by a buffer from the moment they are
finished/recorded until they are exported or dropped:

- SpanData: snapshot of an ended span
- MetricPoint: one aggregated data point for an instrument and attribute set
- LogRecord: one log entry, linked to the active span when emitted in scope
- Batch: a group of one signal type plus the Resource, handed once to an exporter

Timestamps are integer nanoseconds since the Unix epoch, the OTLP unit.
Processors build modified copies with dataclasses.replace(); nothing here is
mutated in place.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeAlias

from spanline.contracts.attributes import EMPTY_ATTRIBUTES, Attributes
from spanline.contracts.enums import InstrumentKind, Severity, SignalType, SpanKind, StatusCode

if TYPE_CHECKING:
    from spanline.contracts.context import TraceContext
    from spanline.core.resource import Resource


@dataclass(frozen=True, slots=True)
class InstrumentationScope:
    """Name/version of the tracer, meter or logger that produced a signal."""

    name: str
    version: str | None = None


@dataclass(frozen=True, slots=True)
class Status:
    """Span status: code plus optional description (only meaningful for ERROR)."""

    code: StatusCode = StatusCode.UNSET
    message: str = ""


@dataclass(frozen=True, slots=True)
class SpanEvent:
    """A timestamped annotation on a span."""

    name: str
    timestamp: int
    attributes: Attributes = field(default_factory=lambda: EMPTY_ATTRIBUTES)


@dataclass(frozen=True, slots=True)
class SpanData:
    """Immutable snapshot of an ended span."""

    name: str
    context: TraceContext
    kind: SpanKind
    start_time: int
    end_time: int
    scope: InstrumentationScope
    attributes: Attributes = field(default_factory=lambda: EMPTY_ATTRIBUTES)
    events: tuple[SpanEvent, ...] = ()
    status: Status = field(default_factory=Status)
    dropped_attributes: int = 0

    def __post_init__(self) -> None:
        if self.end_time < self.start_time:
            raise ValueError(f"end_time ({self.end_time}) must be >= start_time ({self.start_time})")

    @property
    def duration_ns(self) -> int:
        return self.end_time - self.start_time


@dataclass(frozen=True, slots=True)
class HistogramValue:
    """Bucketed histogram aggregate for one collection interval.

    bucket_counts has len(boundaries) + 1 entries; bucket i counts values in
    (boundaries[i-1], boundaries[i]], the last bucket counts values above the
    final boundary.
    """

    boundaries: tuple[float, ...]
    bucket_counts: tuple[int, ...]
    count: int
    sum: float
    min: float
    max: float


@dataclass(frozen=True, slots=True)
class MetricPoint:
    """One aggregated data point.

    For counters value is the delta summed over the interval, for gauges the
    last recorded value, for histograms value is a HistogramValue.
    """

    instrument_name: str
    kind: InstrumentKind
    value: int | float | HistogramValue
    start_time: int
    timestamp: int
    scope: InstrumentationScope
    attributes: Attributes = field(default_factory=lambda: EMPTY_ATTRIBUTES)
    unit: str = ""
    description: str = ""

    @property
    def name(self) -> str:
        """Alias used by name-based processors (route exclusion)."""
        return self.instrument_name


@dataclass(frozen=True, slots=True)
class LogRecord:
    """A log entry, linked to the active span when emitted in its scope."""

    timestamp: int
    severity: Severity
    body: str
    scope: InstrumentationScope
    attributes: Attributes = field(default_factory=lambda: EMPTY_ATTRIBUTES)
    trace_id: int | None = None
    span_id: int | None = None
    sampled: bool = False
    observed_timestamp: int | None = None

    @property
    def name(self) -> str:
        """Alias used by name-based processors (route exclusion)."""
        return self.body


Signal: TypeAlias = SpanData | MetricPoint | LogRecord


@dataclass(frozen=True, slots=True)
class Batch:
    """A bounded group of one signal type exported in one call.

    A batch is delivered whole or dropped whole - it is never split.

    Attributes:
        signal_type: Which signal the items are
        items: Signals in enqueue order
        resource: Process Resource shared by every item
        sequence: Monotonic per-scheduler counter (FIFO across batches)
    """

    signal_type: SignalType
    items: tuple[Signal, ...]
    resource: Resource
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.items)

    @classmethod
    def of(cls, signal_type: SignalType, items: Sequence[Signal], resource: Resource, sequence: int = 0) -> Batch:
        return cls(signal_type=signal_type, items=tuple(items), resource=resource, sequence=sequence)


def signal_type_of(signal: Signal) -> SignalType:
    """Map a finished signal to its pipeline."""
    if isinstance(signal, SpanData):
        return SignalType.TRACES
    if isinstance(signal, MetricPoint):
        return SignalType.METRICS
    if isinstance(signal, LogRecord):
        return SignalType.LOGS
    raise TypeError(f"Not a telemetry signal: {type(signal).__name__}")
