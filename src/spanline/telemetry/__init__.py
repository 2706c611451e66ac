# src/spanline/telemetry/__init__.py
"""Telemetry pipeline: producers, processing, buffering and export.

Components:
- propagation: active TraceContext, capture/restore, W3C header inject/extract
- sampling: head samplers (always on/off, trace-id ratio, parent-based)
- tracing / metrics / logs: producer handles (Tracer, Meter, TelemetryLogger)
- processors: attribute processor chain (route exclusion, enrichment,
  redaction, truncation)
- buffer: BoundedBuffer with overflow tracking
- scheduler: BatchScheduler, one per signal type
- retry: bounded exponential backoff for retryable export results
- protocols / hookspecs / factory: exporter contract and pluggy discovery
- exporters: Built-in exporters (OTLP/HTTP, OTLP/gRPC, console)
- provider: TelemetryProvider and the process-wide registry
- shutdown: ShutdownCoordinator

Usage:
    from spanline.telemetry import TelemetryProvider, ConsoleExporter

    provider = TelemetryProvider(settings, exporter=ConsoleExporter())
"""

from spanline.telemetry.buffer import BoundedBuffer
from spanline.telemetry.exporters import ConsoleExporter, OTLPGrpcExporter, OTLPHttpExporter
from spanline.telemetry.factory import create_exporter
from spanline.telemetry.logs import TelemetryLogger, TelemetryLoggingHandler
from spanline.telemetry.metrics import Counter, Gauge, Histogram, Meter
from spanline.telemetry.processors import ProcessorChain
from spanline.telemetry.protocols import ExporterProtocol
from spanline.telemetry.provider import TelemetryProvider
from spanline.telemetry.scheduler import BatchScheduler, SchedulerConfig
from spanline.telemetry.shutdown import ShutdownCoordinator, ShutdownReport
from spanline.telemetry.tracing import Span, Tracer

__all__ = [
    "BatchScheduler",
    "BoundedBuffer",
    "ConsoleExporter",
    "Counter",
    "ExporterProtocol",
    "Gauge",
    "Histogram",
    "Meter",
    "OTLPGrpcExporter",
    "OTLPHttpExporter",
    "ProcessorChain",
    "SchedulerConfig",
    "ShutdownCoordinator",
    "ShutdownReport",
    "Span",
    "TelemetryLogger",
    "TelemetryLoggingHandler",
    "TelemetryProvider",
    "Tracer",
    "create_exporter",
]
