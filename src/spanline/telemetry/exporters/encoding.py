# src/spanline/telemetry/exporters/encoding.py
"""Batch -> OTLP protobuf request encoding.

Shared by the HTTP and gRPC exporters. Produces the collector service
request messages from opentelemetry-proto:

- traces:  ExportTraceServiceRequest
- metrics: ExportMetricsServiceRequest (delta temporality)
- logs:    ExportLogsServiceRequest

Signals are grouped by instrumentation scope; every batch carries exactly
one Resource, so each request has exactly one Resource* entry.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import TypeVar, cast

from opentelemetry.proto.collector.logs.v1.logs_service_pb2 import ExportLogsServiceRequest
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import ExportMetricsServiceRequest
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceRequest
from opentelemetry.proto.common.v1 import common_pb2
from opentelemetry.proto.logs.v1 import logs_pb2
from opentelemetry.proto.metrics.v1 import metrics_pb2
from opentelemetry.proto.resource.v1 import resource_pb2
from opentelemetry.proto.trace.v1 import trace_pb2

from spanline.contracts.attributes import AttributeValue
from spanline.contracts.enums import InstrumentKind, SignalType
from spanline.contracts.signals import (
    Batch,
    HistogramValue,
    InstrumentationScope,
    LogRecord,
    MetricPoint,
    SpanData,
)
from spanline.core.resource import Resource

ExportRequest = ExportTraceServiceRequest | ExportMetricsServiceRequest | ExportLogsServiceRequest

_SAMPLED_FLAG = 0x01

S = TypeVar("S", SpanData, MetricPoint, LogRecord)


# =============================================================================
# Common
# =============================================================================


def encode_value(value: AttributeValue) -> common_pb2.AnyValue:
    """Encode one attribute value. bool before int: bool is an int subclass."""
    if isinstance(value, bool):
        return common_pb2.AnyValue(bool_value=value)
    if isinstance(value, str):
        return common_pb2.AnyValue(string_value=value)
    if isinstance(value, int):
        return common_pb2.AnyValue(int_value=value)
    if isinstance(value, float):
        return common_pb2.AnyValue(double_value=value)
    if isinstance(value, tuple):
        return common_pb2.AnyValue(
            array_value=common_pb2.ArrayValue(values=[common_pb2.AnyValue(string_value=item) for item in value])
        )
    raise TypeError(f"Unsupported attribute value type: {type(value).__name__}")


def encode_attributes(attributes: Mapping[str, AttributeValue]) -> list[common_pb2.KeyValue]:
    return [common_pb2.KeyValue(key=key, value=encode_value(value)) for key, value in attributes.items()]


def encode_resource(resource: Resource) -> resource_pb2.Resource:
    return resource_pb2.Resource(attributes=encode_attributes(resource))


def _encode_scope(scope: InstrumentationScope) -> common_pb2.InstrumentationScope:
    return common_pb2.InstrumentationScope(name=scope.name, version=scope.version or "")


def _group_by_scope(items: Iterable[S]) -> dict[InstrumentationScope, list[S]]:
    grouped: dict[InstrumentationScope, list[S]] = defaultdict(list)
    for item in items:
        grouped[item.scope].append(item)
    return grouped


def _trace_id_bytes(trace_id: int) -> bytes:
    return trace_id.to_bytes(16, "big")


def _span_id_bytes(span_id: int) -> bytes:
    return span_id.to_bytes(8, "big")


# =============================================================================
# Traces
# =============================================================================


def _encode_span(span: SpanData) -> trace_pb2.Span:
    ctx = span.context
    return trace_pb2.Span(
        trace_id=_trace_id_bytes(ctx.trace_id),
        span_id=_span_id_bytes(ctx.span_id),
        parent_span_id=_span_id_bytes(ctx.parent_span_id) if ctx.parent_span_id else b"",
        flags=_SAMPLED_FLAG if ctx.sampled else 0,
        name=span.name,
        kind=int(span.kind),
        start_time_unix_nano=span.start_time,
        end_time_unix_nano=span.end_time,
        attributes=encode_attributes(span.attributes),
        dropped_attributes_count=span.dropped_attributes,
        events=[
            trace_pb2.Span.Event(
                time_unix_nano=event.timestamp,
                name=event.name,
                attributes=encode_attributes(event.attributes),
            )
            for event in span.events
        ],
        status=trace_pb2.Status(code=int(span.status.code), message=span.status.message),
    )


def encode_spans(batch: Batch) -> ExportTraceServiceRequest:
    scope_spans = [
        trace_pb2.ScopeSpans(scope=_encode_scope(scope), spans=[_encode_span(span) for span in spans])
        for scope, spans in _group_by_scope(cast("tuple[SpanData, ...]", batch.items)).items()
    ]
    return ExportTraceServiceRequest(
        resource_spans=[trace_pb2.ResourceSpans(resource=encode_resource(batch.resource), scope_spans=scope_spans)]
    )


# =============================================================================
# Metrics
# =============================================================================


def _number_point(point: MetricPoint) -> metrics_pb2.NumberDataPoint:
    data_point = metrics_pb2.NumberDataPoint(
        attributes=encode_attributes(point.attributes),
        start_time_unix_nano=point.start_time,
        time_unix_nano=point.timestamp,
    )
    if isinstance(point.value, int) and not isinstance(point.value, bool):
        data_point.as_int = point.value
    else:
        data_point.as_double = float(point.value)  # type: ignore[arg-type]
    return data_point


def _histogram_point(point: MetricPoint) -> metrics_pb2.HistogramDataPoint:
    value = point.value
    assert isinstance(value, HistogramValue)
    return metrics_pb2.HistogramDataPoint(
        attributes=encode_attributes(point.attributes),
        start_time_unix_nano=point.start_time,
        time_unix_nano=point.timestamp,
        count=value.count,
        sum=value.sum,
        bucket_counts=list(value.bucket_counts),
        explicit_bounds=list(value.boundaries),
        min=value.min,
        max=value.max,
    )


def _encode_metric(points: list[MetricPoint]) -> metrics_pb2.Metric:
    first = points[0]
    metric = metrics_pb2.Metric(name=first.instrument_name, description=first.description, unit=first.unit)
    if first.kind == InstrumentKind.COUNTER:
        metric.sum.CopyFrom(
            metrics_pb2.Sum(
                data_points=[_number_point(p) for p in points],
                aggregation_temporality=metrics_pb2.AGGREGATION_TEMPORALITY_DELTA,
                is_monotonic=True,
            )
        )
    elif first.kind == InstrumentKind.GAUGE:
        metric.gauge.CopyFrom(metrics_pb2.Gauge(data_points=[_number_point(p) for p in points]))
    else:
        metric.histogram.CopyFrom(
            metrics_pb2.Histogram(
                data_points=[_histogram_point(p) for p in points],
                aggregation_temporality=metrics_pb2.AGGREGATION_TEMPORALITY_DELTA,
            )
        )
    return metric


def encode_metrics(batch: Batch) -> ExportMetricsServiceRequest:
    scope_metrics = []
    for scope, points in _group_by_scope(cast("tuple[MetricPoint, ...]", batch.items)).items():
        by_instrument: dict[tuple[str, InstrumentKind, str], list[MetricPoint]] = defaultdict(list)
        for point in points:
            by_instrument[(point.instrument_name, point.kind, point.unit)].append(point)
        scope_metrics.append(
            metrics_pb2.ScopeMetrics(
                scope=_encode_scope(scope),
                metrics=[_encode_metric(group) for group in by_instrument.values()],
            )
        )
    return ExportMetricsServiceRequest(
        resource_metrics=[
            metrics_pb2.ResourceMetrics(resource=encode_resource(batch.resource), scope_metrics=scope_metrics)
        ]
    )


# =============================================================================
# Logs
# =============================================================================


def _encode_log(record: LogRecord) -> logs_pb2.LogRecord:
    encoded = logs_pb2.LogRecord(
        time_unix_nano=record.timestamp,
        observed_time_unix_nano=record.observed_timestamp or record.timestamp,
        severity_number=int(record.severity),
        severity_text=record.severity.name,
        body=common_pb2.AnyValue(string_value=record.body),
        attributes=encode_attributes(record.attributes),
        flags=_SAMPLED_FLAG if record.sampled else 0,
    )
    if record.trace_id is not None and record.span_id is not None:
        encoded.trace_id = _trace_id_bytes(record.trace_id)
        encoded.span_id = _span_id_bytes(record.span_id)
    return encoded


def encode_logs(batch: Batch) -> ExportLogsServiceRequest:
    scope_logs = [
        logs_pb2.ScopeLogs(scope=_encode_scope(scope), log_records=[_encode_log(r) for r in records])
        for scope, records in _group_by_scope(cast("tuple[LogRecord, ...]", batch.items)).items()
    ]
    return ExportLogsServiceRequest(
        resource_logs=[logs_pb2.ResourceLogs(resource=encode_resource(batch.resource), scope_logs=scope_logs)]
    )


def encode_batch(batch: Batch) -> ExportRequest:
    """Encode a batch as the OTLP request message for its signal type."""
    if batch.signal_type == SignalType.TRACES:
        return encode_spans(batch)
    if batch.signal_type == SignalType.METRICS:
        return encode_metrics(batch)
    return encode_logs(batch)
