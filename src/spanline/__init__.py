"""
Spanline: an in-process telemetry pipeline.

Spans, metric points and log records produced by application code are
tagged with process metadata, sampled, redacted, buffered, batched and
exported over OTLP to a remote collector.

Usage:
    import spanline

    spanline.init()  # settings from OTEL_* environment variables
    tracer = spanline.get_tracer("checkout", "1.4.0")
    with tracer.start_as_current_span("charge-card") as span:
        span.set_attribute("payment.provider", "acme")
    spanline.shutdown(timeout=5.0)
"""

__version__ = "0.4.0"

from spanline.telemetry.provider import (  # noqa: E402
    TelemetryProvider,
    force_flush,
    get_logger,
    get_meter,
    get_provider,
    get_tracer,
    health_metrics,
    init,
    shutdown,
)

__all__ = [
    "TelemetryProvider",
    "__version__",
    "force_flush",
    "get_logger",
    "get_meter",
    "get_provider",
    "get_tracer",
    "health_metrics",
    "init",
    "shutdown",
]
