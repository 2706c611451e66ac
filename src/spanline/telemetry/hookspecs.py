# src/spanline/telemetry/hookspecs.py
"""pluggy hook specifications for telemetry exporters.

Exporters implement these hooks to register themselves with the pipeline.
The provider calls these hooks during initialization to discover available
exporters.

Usage (implementing an exporter plugin):
    from spanline.telemetry.hookspecs import hookimpl

    class MyExporterPlugin:
        @hookimpl
        def spanline_get_exporters(self):
            return [MyExporter]

    spanline.init(settings, exporter_plugins=[MyExporterPlugin()])
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from spanline.telemetry.protocols import ExporterProtocol

PROJECT_NAME = "spanline"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for exporter plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class SpanlineTelemetrySpec:
    """Hook specifications for telemetry exporter plugins."""

    @hookspec
    def spanline_get_exporters(self) -> list[type["ExporterProtocol"]]:  # type: ignore[empty-body]
        """Return telemetry exporter classes.

        Called during provider initialization to discover available
        exporters. The configured exporter is then instantiated and
        configured from settings.

        Returns:
            List of exporter classes (not instances) that implement
            ExporterProtocol
        """
