"""All status codes, modes, and kinds used across subsystem boundaries.

Values that cross the wire carry the OTLP numeric encoding so the exporters
can map them without lookup tables.
"""

from enum import IntEnum, StrEnum


class SignalType(StrEnum):
    """The three independent telemetry signals.

    Each signal type has its own buffer, scheduler and worker thread.
    """

    TRACES = "traces"
    METRICS = "metrics"
    LOGS = "logs"


class SpanKind(IntEnum):
    """Role of a span in a trace (OTLP Span.SpanKind numbering)."""

    INTERNAL = 1
    SERVER = 2
    CLIENT = 3
    PRODUCER = 4
    CONSUMER = 5


class StatusCode(IntEnum):
    """Span status (OTLP Status.StatusCode numbering)."""

    UNSET = 0
    OK = 1
    ERROR = 2


class InstrumentKind(StrEnum):
    """Kind of metric instrument."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


class Severity(IntEnum):
    """Log severity (OTLP SeverityNumber, base value of each range)."""

    TRACE = 1
    DEBUG = 5
    INFO = 9
    WARN = 13
    ERROR = 17
    FATAL = 21


class ExportResult(StrEnum):
    """Outcome of a single exporter call.

    Values:
        SUCCESS: Batch delivered
        RETRYABLE: Transient failure (timeout, throttling, 5xx) - retry with backoff
        FATAL: Permanent failure (auth, malformed payload) - drop without retry
    """

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class OverflowPolicy(StrEnum):
    """What a full buffer does with the next signal.

    Values:
        DROP_NEWEST: Reject the incoming signal, keep what is queued (default)
        DROP_OLDEST: Evict the oldest queued signal to make room (ring buffer)
    """

    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"


class SchedulerState(StrEnum):
    """Lifecycle of a batch scheduler.

    ACCEPTING -> RELEASING -> ACCEPTING while running;
    ACCEPTING -> DRAINING -> CLOSED on shutdown.
    """

    ACCEPTING = "accepting"
    RELEASING = "releasing"
    DRAINING = "draining"
    CLOSED = "closed"


class ShutdownResult(StrEnum):
    """Outcome of a provider shutdown."""

    DRAINED = "drained"
    TIMED_OUT = "timed_out"


class ExportProtocol(StrEnum):
    """Wire protocol selection for the OTLP exporter."""

    GRPC = "grpc"
    HTTP_PROTOBUF = "http/protobuf"
    CONSOLE = "console"


class SamplingStrategy(StrEnum):
    """Configurable sampling strategies."""

    ALWAYS_ON = "always_on"
    ALWAYS_OFF = "always_off"
    RATIO = "ratio"
    PARENT_RATIO = "parent_ratio"


class ProcessorName(StrEnum):
    """Built-in attribute processors, in their canonical run order."""

    ROUTE_EXCLUSION = "route_exclusion"
    ENRICHMENT = "enrichment"
    REDACTION = "redaction"
    TRUNCATION = "truncation"
