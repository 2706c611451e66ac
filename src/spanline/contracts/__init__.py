"""Shared contracts for cross-boundary data types.

Signal dataclasses, enums, attribute types and errors that cross subsystem
boundaries are defined here. This package is a LEAF MODULE with no outbound
dependencies to core/telemetry.

Settings classes are NOT re-exported here - import them from
spanline.core.config.
"""

from spanline.contracts.attributes import (
    EMPTY_ATTRIBUTES,
    Attributes,
    AttributeValue,
    clean_attributes,
    freeze_attributes,
    normalize_value,
)
from spanline.contracts.context import TraceContext
from spanline.contracts.enums import (
    ExportProtocol,
    ExportResult,
    InstrumentKind,
    OverflowPolicy,
    ProcessorName,
    SamplingStrategy,
    SchedulerState,
    Severity,
    ShutdownResult,
    SignalType,
    SpanKind,
    StatusCode,
)
from spanline.contracts.errors import ConfigurationError, ExporterConfigurationError, SpanlineError
from spanline.contracts.signals import (
    Batch,
    HistogramValue,
    InstrumentationScope,
    LogRecord,
    MetricPoint,
    Signal,
    SpanData,
    SpanEvent,
    Status,
    signal_type_of,
)

__all__ = [
    "EMPTY_ATTRIBUTES",
    "AttributeValue",
    "Attributes",
    "Batch",
    "ConfigurationError",
    "ExportProtocol",
    "ExportResult",
    "ExporterConfigurationError",
    "HistogramValue",
    "InstrumentKind",
    "InstrumentationScope",
    "LogRecord",
    "MetricPoint",
    "OverflowPolicy",
    "ProcessorName",
    "SamplingStrategy",
    "SchedulerState",
    "Severity",
    "ShutdownResult",
    "Signal",
    "SignalType",
    "SpanData",
    "SpanEvent",
    "SpanKind",
    "SpanlineError",
    "Status",
    "StatusCode",
    "TraceContext",
    "clean_attributes",
    "freeze_attributes",
    "normalize_value",
    "signal_type_of",
]
