# src/spanline/telemetry/provider.py
"""TelemetryProvider and the process-wide registry.

The provider wires the pipeline once per process:

    Resource, Sampler, ProcessorChain
        -> one BoundedBuffer + BatchScheduler per enabled signal type
        -> one shared Exporter

and hands out lightweight handles (Tracer, Meter, TelemetryLogger) to
application code.

Registry contract:
    init() constructs the global provider exactly once. Calling it again
    raises ConfigurationError - re-initialization is a configuration
    error, never silently ignored. Handles obtained from get_tracer(),
    get_meter() and get_logger() before init() resolve the provider
    lazily: they record nothing until init() has run, then start
    recording without being re-obtained.

Thread Safety:
    emit() is called from any producer thread. Each signal type has its
    own scheduler and lock; nothing here locks across signal types.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from spanline.contracts.enums import ShutdownResult, SignalType
from spanline.contracts.errors import ConfigurationError
from spanline.contracts.signals import InstrumentationScope, Signal, signal_type_of
from spanline.core.config import TelemetrySettings, settings_from_env
from spanline.core.logging import get_logger as get_internal_logger
from spanline.core.resource import Resource, build_resource
from spanline.telemetry.factory import create_exporter
from spanline.telemetry.logs import TelemetryLogger
from spanline.telemetry.metrics import Meter, MetricAggregator, PeriodicMetricReader
from spanline.telemetry.processors import ProcessorChain
from spanline.telemetry.protocols import ExporterProtocol
from spanline.telemetry.retry import RetryConfig
from spanline.telemetry.sampling import Sampler, sampler_from_settings
from spanline.telemetry.scheduler import BatchScheduler, SchedulerConfig
from spanline.telemetry.shutdown import ShutdownCoordinator, ShutdownReport
from spanline.telemetry.stats import INTERNAL_ERRORS, PipelineStats
from spanline.telemetry.tracing import Tracer

logger = get_internal_logger(__name__)


class TelemetryProvider:
    """Owns the Resource and the per-signal buffers for the process lifetime.

    Example:
        >>> provider = TelemetryProvider(settings, exporter=ConsoleExporter())
        >>> tracer = provider.get_tracer("checkout")
        >>> with tracer.start_as_current_span("charge"):
        ...     pass
        >>> provider.shutdown(timeout=5.0)
    """

    def __init__(
        self,
        settings: TelemetrySettings | None = None,
        *,
        exporter: ExporterProtocol | None = None,
        resource: Resource | None = None,
        clock: Callable[[], int] | None = None,
        exporter_plugins: Iterable[Any] = (),
        retry_config: RetryConfig | None = None,
        start_metric_reader: bool = True,
    ) -> None:
        """Build the pipeline.

        Args:
            settings: Validated settings (default: all defaults)
            exporter: Pre-configured exporter; when None one is created from
                settings.exporter via exporter discovery
            resource: Resource override; when None detectors build one
            clock: Epoch-nanosecond clock for signal timestamps
            exporter_plugins: Extra pluggy plugins providing exporters
            retry_config: Retry policy override (default from settings.retry)
            start_metric_reader: Run the periodic metric collection thread

        Raises:
            ConfigurationError: If the exporter cannot be created or configured
        """
        self._settings = settings if settings is not None else TelemetrySettings()
        self._clock = clock or time.time_ns
        self.stats = PipelineStats()
        self.resource = resource if resource is not None else build_resource(self._settings)
        self.sampler: Sampler = sampler_from_settings(self._settings.sampling)
        self.aggregator = MetricAggregator(self._clock)
        self._chain = ProcessorChain.from_settings(self._settings.processors, self.stats)
        self._accepting = self._settings.enabled
        self._schedulers: dict[SignalType, BatchScheduler] = {}
        self._metric_reader: PeriodicMetricReader | None = None
        self._exporter: ExporterProtocol | None = None

        if self._settings.enabled:
            # Exporter first: a bad exporter configuration must fail before
            # any background thread starts
            self._exporter = exporter if exporter is not None else create_exporter(
                self._settings, exporter_plugins=exporter_plugins
            )
            scheduler_config = SchedulerConfig.from_settings(self._settings)
            retry = retry_config if retry_config is not None else RetryConfig.from_settings(self._settings.retry)
            for signal_type in self._enabled_signal_types():
                self._schedulers[signal_type] = BatchScheduler(
                    signal_type,
                    self._exporter,
                    self.resource,
                    scheduler_config,
                    retry_config=retry,
                    stats=self.stats,
                )
            if SignalType.METRICS in self._schedulers and start_metric_reader:
                self._metric_reader = PeriodicMetricReader(
                    self.aggregator,
                    self.emit,
                    self._settings.metric_export_interval_seconds,
                    stats=self.stats,
                )

        self.coordinator = ShutdownCoordinator(self, self._settings.shutdown_timeout_seconds)
        logger.info(
            "Telemetry provider initialized",
            enabled=self._settings.enabled,
            service_name=self.resource.get("service.name"),
            exporter=self._exporter.name if self._exporter is not None else None,
            signals=[s.value for s in self._schedulers],
            sampler=self.sampler.description,
        )

    def _enabled_signal_types(self) -> list[SignalType]:
        enabled = self._settings.signals
        return [
            signal_type
            for signal_type, on in (
                (SignalType.TRACES, enabled.traces),
                (SignalType.METRICS, enabled.metrics),
                (SignalType.LOGS, enabled.logs),
            )
            if on
        ]

    # =========================================================================
    # Handles
    # =========================================================================

    def get_tracer(self, name: str, version: str | None = None) -> Tracer:
        return Tracer(InstrumentationScope(name, version), lambda: self)

    def get_meter(self, name: str, version: str | None = None) -> Meter:
        return Meter(InstrumentationScope(name, version), lambda: self)

    def get_logger(self, name: str, version: str | None = None) -> TelemetryLogger:
        return TelemetryLogger(InstrumentationScope(name, version), lambda: self)

    # =========================================================================
    # Pipeline entry
    # =========================================================================

    @property
    def settings(self) -> TelemetrySettings:
        return self._settings

    @property
    def exporter(self) -> ExporterProtocol | None:
        return self._exporter

    @property
    def schedulers(self) -> list[BatchScheduler]:
        return list(self._schedulers.values())

    def now_ns(self) -> int:
        return self._clock()

    def is_enabled(self, signal_type: SignalType) -> bool:
        """True while producers of signal_type should record."""
        return self._accepting and signal_type in self._schedulers

    def emit(self, signal: Signal) -> bool:
        """Run a finished signal through the processor chain into its buffer.

        Never raises. Returns False when the signal was filtered or dropped.
        """
        try:
            signal_type = signal_type_of(signal)
            scheduler = self._schedulers.get(signal_type)
            if scheduler is None:
                return False
            processed = self._chain.process(signal)
            if processed is None:
                return False
            return scheduler.enqueue(processed)
        except Exception as e:
            self.stats.increment(_safe_type(signal), INTERNAL_ERRORS)
            logger.error("Failed to emit signal", error=str(e), error_type=type(e).__name__)
            return False

    def collect_metrics(self) -> int:
        """Collect the current metric interval into the metrics pipeline."""
        if SignalType.METRICS not in self._schedulers:
            return 0
        if self._metric_reader is not None:
            return self._metric_reader.collect()
        points = self.aggregator.collect()
        for point in points:
            self.emit(point)
        return len(points)

    # =========================================================================
    # Flush / shutdown
    # =========================================================================

    def force_flush(self, timeout: float | None = None) -> bool:
        """Collect metrics and export everything buffered now.

        Returns:
            True if every scheduler finished within timeout.
        """
        deadline = time.monotonic() + (self._settings.shutdown_timeout_seconds if timeout is None else timeout)
        self.collect_metrics()
        flushed = True
        for scheduler in self._schedulers.values():
            flushed = scheduler.force_flush(max(deadline - time.monotonic(), 0.0)) and flushed
        return flushed

    def shutdown(self, timeout: float | None = None) -> ShutdownResult:
        """Drain all buffers and close the exporter. See ShutdownCoordinator."""
        return self.coordinator.shutdown(timeout).result

    def shutdown_report(self, timeout: float | None = None) -> ShutdownReport:
        return self.coordinator.shutdown(timeout)

    @property
    def is_shutdown(self) -> bool:
        return self.coordinator.report is not None

    def _stop_accepting(self) -> None:
        self._accepting = False

    def _stop_metric_reader(self, timeout: float) -> None:
        if self._metric_reader is not None:
            self._metric_reader.shutdown(timeout)

    def _shutdown_exporter(self) -> None:
        if self._exporter is not None:
            self._exporter.shutdown()

    @property
    def health_metrics(self) -> dict[str, Any]:
        """Snapshot of pipeline health for monitoring."""
        report = self.coordinator.report
        return {
            "enabled": self._settings.enabled,
            "accepting": self._accepting,
            "exporter": self._exporter.name if self._exporter is not None else None,
            "schedulers": {s.signal_type.value: s.health_metrics for s in self._schedulers.values()},
            "counters": self.stats.snapshot(),
            "shutdown": None
            if report is None
            else {"result": report.result.value, "dropped_on_shutdown": report.dropped_on_shutdown},
        }


def _safe_type(signal: Any) -> SignalType:
    try:
        return signal_type_of(signal)
    except TypeError:
        return SignalType.TRACES


# =============================================================================
# Process-wide registry
# =============================================================================

_registry_lock = threading.Lock()
_provider: TelemetryProvider | None = None


def _active_provider() -> TelemetryProvider | None:
    return _provider


def init(
    settings: TelemetrySettings | None = None,
    *,
    exporter: ExporterProtocol | None = None,
    resource: Resource | None = None,
    exporter_plugins: Iterable[Any] = (),
    **overrides: Any,
) -> TelemetryProvider:
    """Initialize the process-wide provider. Call exactly once.

    Args:
        settings: Settings (default: built from OTEL_* environment variables)
        exporter: Pre-configured exporter instead of exporter discovery
        resource: Resource override
        exporter_plugins: Extra pluggy plugins providing exporters
        **overrides: Top-level TelemetrySettings fields to override,
            e.g. init(shutdown_timeout_seconds=2.0)

    Raises:
        ConfigurationError: If already initialized or misconfigured
        ValidationError: If overrides fail settings validation
    """
    global _provider
    with _registry_lock:
        if _provider is not None:
            raise ConfigurationError(
                "spanline.init() was already called; the telemetry pipeline is constructed once per process"
            )
        if settings is None:
            settings = settings_from_env()
        if overrides:
            settings = TelemetrySettings.model_validate({**settings.model_dump(), **overrides})
        provider = TelemetryProvider(
            settings,
            exporter=exporter,
            resource=resource,
            exporter_plugins=exporter_plugins,
        )
        if settings.install_shutdown_hooks:
            provider.coordinator.install_hooks()
        _provider = provider
    return provider


def get_provider() -> TelemetryProvider | None:
    """The initialized provider, or None before init()."""
    return _provider


def get_tracer(name: str, version: str | None = None) -> Tracer:
    """Tracer handle; non-recording until init() has run."""
    return Tracer(InstrumentationScope(name, version), _active_provider)


def get_meter(name: str, version: str | None = None) -> Meter:
    """Meter handle; measurements are ignored until init() has run."""
    return Meter(InstrumentationScope(name, version), _active_provider)


def get_logger(name: str, version: str | None = None) -> TelemetryLogger:
    """Telemetry logger handle; records are ignored until init() has run."""
    return TelemetryLogger(InstrumentationScope(name, version), _active_provider)


def force_flush(timeout: float | None = None) -> bool:
    provider = _provider
    if provider is None:
        return True
    return provider.force_flush(timeout)


def shutdown(timeout: float | None = None) -> ShutdownResult:
    """Shut down the global provider. DRAINED if it was never initialized."""
    provider = _provider
    if provider is None:
        logger.debug("shutdown() called before init() - nothing to drain")
        return ShutdownResult.DRAINED
    return provider.shutdown(timeout)


def health_metrics() -> dict[str, Any]:
    provider = _provider
    if provider is None:
        return {"enabled": False, "initialized": False}
    return {"initialized": True, **provider.health_metrics}


def _reset_for_testing(timeout: float = 1.0) -> None:
    """Shut down and forget the global provider (test isolation only)."""
    global _provider
    with _registry_lock:
        provider, _provider = _provider, None
    if provider is not None:
        provider.shutdown(timeout)
        provider.coordinator.uninstall_hooks()
