# src/spanline/telemetry/exporters/__init__.py
"""Built-in telemetry exporters.

Exporters are discovered via pluggy hooks.

Available exporters:
- OTLPHttpExporter ('otlp_http'): OTLP over HTTP/protobuf
- OTLPGrpcExporter ('otlp_grpc'): OTLP over gRPC
- ConsoleExporter ('console'): Write signals to stdout/stderr for debugging

Plugin registration:
    Exporters are registered via the spanline_get_exporters hook.
    The BuiltinExportersPlugin in this module registers all built-in exporters.
"""

from spanline.telemetry.exporters.console import ConsoleExporter
from spanline.telemetry.exporters.otlp_grpc import OTLPGrpcExporter
from spanline.telemetry.exporters.otlp_http import OTLPHttpExporter
from spanline.telemetry.hookspecs import hookimpl


class BuiltinExportersPlugin:
    """Plugin that registers built-in telemetry exporters."""

    @hookimpl
    def spanline_get_exporters(self) -> list[type]:
        """Return built-in exporter classes."""
        return [ConsoleExporter, OTLPHttpExporter, OTLPGrpcExporter]


__all__ = [
    "BuiltinExportersPlugin",
    "ConsoleExporter",
    "OTLPGrpcExporter",
    "OTLPHttpExporter",
]
