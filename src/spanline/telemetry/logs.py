# src/spanline/telemetry/logs.py
"""Log records: the logging half of the producer API.

TelemetryLogger.emit_log_record() builds a LogRecord and sends it through the
logs pipeline. When called inside an active span's scope the record carries
that span's trace_id and span_id - the one required link between logs and
traces.

TelemetryLoggingHandler bridges the stdlib logging module: attach it to a
logger and every record becomes a telemetry log record. Records from
spanline's own loggers (and its transports: httpx, grpc) are ignored so
that export diagnostics can never loop back into the pipeline.
"""

from __future__ import annotations

import logging
import threading
import traceback
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from spanline.contracts.attributes import clean_attributes, freeze_attributes
from spanline.contracts.context import TraceContext
from spanline.contracts.enums import Severity, SignalType
from spanline.contracts.signals import InstrumentationScope, LogRecord
from spanline.core.logging import get_logger, is_internal_logger
from spanline.telemetry.propagation import current, is_instrumentation_suppressed
from spanline.telemetry.stats import INTERNAL_ERRORS

if TYPE_CHECKING:
    from spanline.telemetry.provider import TelemetryProvider

logger = get_logger(__name__)

ProviderResolver = Callable[[], "TelemetryProvider | None"]


def severity_from_levelno(levelno: int) -> Severity:
    """Map a stdlib logging level to an OTLP severity."""
    if levelno >= logging.CRITICAL:
        return Severity.FATAL
    if levelno >= logging.ERROR:
        return Severity.ERROR
    if levelno >= logging.WARNING:
        return Severity.WARN
    if levelno >= logging.INFO:
        return Severity.INFO
    if levelno >= logging.DEBUG:
        return Severity.DEBUG
    return Severity.TRACE


class TelemetryLogger:
    """Emits log records for one instrumentation scope."""

    def __init__(self, scope: InstrumentationScope, resolve: ProviderResolver) -> None:
        self._scope = scope
        self._resolve = resolve

    @property
    def scope(self) -> InstrumentationScope:
        return self._scope

    def emit_log_record(
        self,
        body: Any,
        severity: Severity = Severity.INFO,
        attributes: Mapping[str, Any] | None = None,
        *,
        timestamp: int | None = None,
        context: TraceContext | None = None,
    ) -> bool:
        """Emit one log record. Never raises.

        Args:
            body: Message; non-strings are rendered with str()
            severity: OTLP severity
            attributes: Record attributes (invalid values dropped)
            timestamp: Event time in epoch nanoseconds (default now)
            context: Trace context to link; defaults to the active one

        Returns:
            True if the record was accepted into the logs pipeline.
        """
        provider = self._resolve()
        if provider is None or is_instrumentation_suppressed() or not provider.is_enabled(SignalType.LOGS):
            return False
        try:
            ctx = context if context is not None else current()
            now = provider.now_ns()
            record = LogRecord(
                timestamp=timestamp if timestamp is not None else now,
                severity=severity,
                body=body if isinstance(body, str) else str(body),
                scope=self._scope,
                attributes=freeze_attributes(clean_attributes(attributes)),
                trace_id=ctx.trace_id if ctx is not None else None,
                span_id=ctx.span_id if ctx is not None else None,
                sampled=ctx.sampled if ctx is not None else False,
                observed_timestamp=now,
            )
        except Exception as e:
            provider.stats.increment(SignalType.LOGS, INTERNAL_ERRORS)
            logger.error("Failed to build log record", error=str(e), error_type=type(e).__name__)
            return False
        return provider.emit(record)

    def debug(self, body: Any, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.emit_log_record(body, Severity.DEBUG, attributes)

    def info(self, body: Any, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.emit_log_record(body, Severity.INFO, attributes)

    def warning(self, body: Any, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.emit_log_record(body, Severity.WARN, attributes)

    def error(self, body: Any, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.emit_log_record(body, Severity.ERROR, attributes)

    def critical(self, body: Any, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.emit_log_record(body, Severity.FATAL, attributes)


class TelemetryLoggingHandler(logging.Handler):
    """stdlib logging handler that forwards records into the logs pipeline.

    Example:
        logging.getLogger().addHandler(TelemetryLoggingHandler())

    The handler looks up a TelemetryLogger per stdlib logger name through
    get_logger, so it can be installed before spanline.init().
    """

    # configure_logging() keeps handlers carrying this marker
    spanline_bridge = True

    def __init__(
        self,
        level: int = logging.NOTSET,
        *,
        logger_factory: Callable[[str], TelemetryLogger] | None = None,
    ) -> None:
        super().__init__(level)
        if logger_factory is None:
            from spanline.telemetry.provider import get_logger as get_telemetry_logger

            logger_factory = get_telemetry_logger
        self._logger_factory = logger_factory
        self._loggers: dict[str, TelemetryLogger] = {}
        self._loggers_lock = threading.Lock()

    def _telemetry_logger(self, name: str) -> TelemetryLogger:
        with self._loggers_lock:
            telemetry_logger = self._loggers.get(name)
            if telemetry_logger is None:
                telemetry_logger = self._logger_factory(name)
                self._loggers[name] = telemetry_logger
            return telemetry_logger

    def emit(self, record: logging.LogRecord) -> None:
        if is_internal_logger(record.name):
            return
        try:
            attributes: dict[str, Any] = {
                "code.filepath": record.pathname,
                "code.lineno": record.lineno,
                "code.function": record.funcName,
                "logger.name": record.name,
                "thread.name": record.threadName or "",
            }
            if record.exc_info and record.exc_info[1] is not None:
                exc_type, exc, tb = record.exc_info
                attributes["exception.type"] = exc_type.__qualname__ if exc_type is not None else ""
                attributes["exception.message"] = str(exc)
                attributes["exception.stacktrace"] = "".join(traceback.format_exception(exc_type, exc, tb))
            self._telemetry_logger(record.name).emit_log_record(
                record.getMessage(),
                severity_from_levelno(record.levelno),
                attributes,
                timestamp=int(record.created * 1_000_000_000),
            )
        except Exception:
            self.handleError(record)
