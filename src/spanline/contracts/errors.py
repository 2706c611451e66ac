"""Spanline exceptions.

These are raised at configuration and initialization time only. Nothing on
the producer or export path raises into application code - those paths log
and count instead.
"""


class SpanlineError(Exception):
    """Base class for all spanline errors."""


class ConfigurationError(SpanlineError):
    """Raised when the pipeline is misconfigured or initialized twice.

    Fails fast at startup so that a bad endpoint or threshold never silently
    disables export.
    """


class ExporterConfigurationError(ConfigurationError):
    """Raised when an exporter encounters a configuration or discovery error.

    This is raised during exporter setup (configure/discovery), NOT during
    export operations. Export operations must not raise - they return an
    ExportResult instead.

    Attributes:
        exporter_name: Name of the exporter that failed
        message: Human-readable error description
    """

    def __init__(self, exporter_name: str, message: str) -> None:
        self.exporter_name = exporter_name
        self.message = message
        super().__init__(f"Exporter '{exporter_name}' failed: {message}")
