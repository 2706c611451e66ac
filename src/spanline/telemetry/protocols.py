# src/spanline/telemetry/protocols.py
"""Protocol definitions for telemetry exporters.

Exporters ship batches of finished signals to a remote collector (OTLP over
HTTP or gRPC) or to a local stream (console).
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from spanline.contracts.enums import ExportResult
    from spanline.contracts.signals import Batch


@runtime_checkable
class ExporterProtocol(Protocol):
    """Protocol for telemetry exporters.

    Exporters are discovered via pluggy hooks and configured from the
    exporter section of TelemetrySettings.

    Lifecycle:
        1. Discovery: spanline_get_exporters hook returns exporter classes
        2. Instantiation: the provider creates ONE instance, shared by the
           traces, metrics and logs schedulers
        3. Configuration: configure() called with exporter options
        4. Operation: export() called for each batch (must not raise)
        5. Shutdown: shutdown() called once every scheduler has drained

    Error handling:
        - configure() MUST raise ExporterConfigurationError on invalid config
        - export() MUST NOT raise - return an ExportResult. The scheduler
          treats an unexpected exception as FATAL.
        - shutdown() MUST be idempotent - safe to call multiple times
    """

    @property
    def name(self) -> str:
        """Exporter name for configuration reference (e.g. 'otlp_http')."""
        ...

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the exporter.

        Called once before any batch is exported.

        Args:
            config: Exporter options (see ExporterSettings.model_dump())

        Raises:
            ExporterConfigurationError: If configuration is invalid or incomplete
        """
        ...

    def export(self, batch: "Batch", timeout: float) -> "ExportResult":
        """Export one batch, whole.

        Thread Safety:
            Called concurrently from up to max_in_flight export threads per
            signal type, and for different signal types at the same time.
            Implementations must be thread-safe.

        Args:
            batch: Signals of a single type plus the process Resource
            timeout: Seconds this call may take; implementations must return
                within it (approximately)

        Returns:
            SUCCESS, RETRYABLE (transient) or FATAL (permanent)
        """
        ...

    def shutdown(self) -> None:
        """Release connections and other resources. Idempotent."""
        ...
