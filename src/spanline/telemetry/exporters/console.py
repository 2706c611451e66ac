# src/spanline/telemetry/exporters/console.py
"""Console exporter for telemetry batches.

Writes every signal of a batch to stdout or stderr in JSON or human-readable
format. Primarily used for testing and local debugging.
"""

from __future__ import annotations

import json
import sys
import threading
from dataclasses import asdict
from enum import Enum
from typing import Any, Literal, TextIO, TypeGuard

from spanline.contracts.context import format_span_id, format_trace_id
from spanline.contracts.enums import ExportResult
from spanline.contracts.errors import ExporterConfigurationError
from spanline.contracts.signals import Batch, LogRecord, MetricPoint, Signal, SpanData
from spanline.core.logging import get_logger

logger = get_logger(__name__)


def _is_valid_format(v: str) -> TypeGuard[Literal["json", "pretty"]]:
    """TypeGuard for format validation - enables mypy type narrowing."""
    return v in {"json", "pretty"}


def _is_valid_output(v: str) -> TypeGuard[Literal["stdout", "stderr"]]:
    """TypeGuard for output validation - enables mypy type narrowing."""
    return v in {"stdout", "stderr"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class ConsoleExporter:
    """Export telemetry batches to stdout/stderr for testing and debugging.

    Supports two output formats:
    - json: One JSON object per signal per line (for machine processing)
    - pretty: Human-readable format with signal type and key fields

    Configuration options:
        format: Output format - "json" (default) or "pretty"
        output: Output stream - "stdout" (default) or "stderr"

    Example configuration:
        exporter:
          protocol: console
          format: pretty
          output: stderr
    """

    _name = "console"

    # Valid configuration values (kept for error messages)
    _VALID_FORMATS: frozenset[str] = frozenset({"json", "pretty"})
    _VALID_OUTPUTS: frozenset[str] = frozenset({"stdout", "stderr"})

    def __init__(self, *, stream: TextIO | None = None) -> None:
        """Initialize unconfigured exporter.

        Args:
            stream: Optional stream overriding the 'output' option (tests)
        """
        self._format: Literal["json", "pretty"] = "json"
        self._output: Literal["stdout", "stderr"] = "stdout"
        self._stream_override = stream
        self._stream: TextIO = stream if stream is not None else sys.stdout
        self._write_lock = threading.Lock()

    @property
    def name(self) -> str:
        """Exporter name for configuration reference."""
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the exporter.

        Unknown keys (endpoint, headers, ...) are ignored so the console
        exporter accepts the same options dict as the OTLP exporters.

        Raises:
            ExporterConfigurationError: If configuration values are invalid
        """
        # Validate type and value for format
        format_value = config.get("format", "json")
        if not isinstance(format_value, str):
            raise ExporterConfigurationError(
                self._name,
                f"'format' must be a string, got {type(format_value).__name__}",
            )
        if _is_valid_format(format_value):
            self._format = format_value  # TypeGuard narrows type in this branch
        else:
            raise ExporterConfigurationError(
                self._name,
                f"Invalid format '{format_value}'. Must be one of: {', '.join(sorted(self._VALID_FORMATS))}",
            )

        # Validate type and value for output stream
        output_value = config.get("output", "stdout")
        if not isinstance(output_value, str):
            raise ExporterConfigurationError(
                self._name,
                f"'output' must be a string, got {type(output_value).__name__}",
            )
        if _is_valid_output(output_value):
            self._output = output_value  # TypeGuard narrows type in this branch
        else:
            raise ExporterConfigurationError(
                self._name,
                f"Invalid output '{output_value}'. Must be one of: {', '.join(sorted(self._VALID_OUTPUTS))}",
            )
        if self._stream_override is None:
            self._stream = sys.stdout if self._output == "stdout" else sys.stderr

        logger.debug(
            "Console exporter configured",
            format=self._format,
            output=self._output,
        )

    def export(self, batch: Batch, timeout: float) -> ExportResult:
        """Write every signal of the batch. Never raises.

        Console write failures are FATAL: retrying a broken stream does not help.
        """
        try:
            if self._format == "json":
                lines = [json.dumps(self._serialize(signal, batch)) for signal in batch.items]
            else:
                lines = [self._format_pretty(signal) for signal in batch.items]
            with self._write_lock:
                for line in lines:
                    print(line, file=self._stream)
                self._stream.flush()
        except Exception as e:
            # Export MUST NOT raise - log and report
            logger.warning(
                "Failed to export telemetry batch",
                exporter=self._name,
                signal_type=batch.signal_type.value,
                error=str(e),
            )
            return ExportResult.FATAL
        return ExportResult.SUCCESS

    def _serialize(self, signal: Signal, batch: Batch) -> dict[str, Any]:
        """Serialize one signal for JSON output.

        Handles:
        - Enum -> value
        - trace/span ids -> lowercase hex
        - Mapping attributes -> plain dicts
        """
        data: dict[str, Any] = {"signal_type": batch.signal_type.value, "sequence": batch.sequence}
        if isinstance(signal, SpanData):
            ctx = signal.context
            data.update(
                name=signal.name,
                kind=signal.kind.name,
                trace_id=ctx.trace_id_hex,
                span_id=ctx.span_id_hex,
                parent_span_id=format_span_id(ctx.parent_span_id) if ctx.parent_span_id else None,
                start_time=signal.start_time,
                end_time=signal.end_time,
                status={"code": signal.status.code.name, "message": signal.status.message},
                attributes=dict(signal.attributes),
                events=[
                    {"name": e.name, "timestamp": e.timestamp, "attributes": dict(e.attributes)} for e in signal.events
                ],
            )
        elif isinstance(signal, MetricPoint):
            value = asdict(signal.value) if not isinstance(signal.value, (int, float)) else signal.value
            data.update(
                name=signal.instrument_name,
                kind=signal.kind,
                value=value,
                unit=signal.unit,
                timestamp=signal.timestamp,
                attributes=dict(signal.attributes),
            )
        elif isinstance(signal, LogRecord):
            data.update(
                body=signal.body,
                severity=signal.severity.name,
                timestamp=signal.timestamp,
                trace_id=format_trace_id(signal.trace_id) if signal.trace_id else None,
                span_id=format_span_id(signal.span_id) if signal.span_id else None,
                attributes=dict(signal.attributes),
            )
        data["scope"] = signal.scope.name
        data["resource"] = dict(batch.resource)
        return _jsonable(data)

    def _format_pretty(self, signal: Signal) -> str:
        """Format: [signal] name (key details)"""
        if isinstance(signal, SpanData):
            duration_ms = signal.duration_ns / 1_000_000
            return (
                f"[span] {signal.name} trace={signal.context.trace_id_hex} "
                f"span={signal.context.span_id_hex} {duration_ms:.3f}ms status={signal.status.code.name}"
            )
        if isinstance(signal, MetricPoint):
            return f"[metric] {signal.instrument_name} {signal.kind.value}={signal.value} {self._details(signal)}"
        return f"[log] {signal.severity.name} {signal.body} {self._details(signal)}"

    def _details(self, signal: Signal) -> str:
        return ", ".join(f"{k}={v}" for k, v in sorted(signal.attributes.items()))

    def shutdown(self) -> None:
        """Flush the stream.

        The console exporter does not own stdout/stderr, so nothing is closed.
        """
        try:
            self._stream.flush()
        except Exception as e:
            logger.warning(
                "Failed to flush console stream",
                exporter=self._name,
                error=str(e),
            )
