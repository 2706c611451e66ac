# tests/unit/telemetry/test_console_exporter.py
"""Unit tests for ConsoleExporter.

Tests cover:
- Configuration validation (valid/invalid format and output values)
- JSON output format with hex ids, enum values and the Resource
- Pretty output format with human-readable strings
- Error handling (export must not raise)
- Protocol compliance (name property, shutdown)
"""

import json
import sys
from dataclasses import replace
from io import StringIO
from unittest.mock import patch

import pytest

from spanline.contracts.context import TraceContext
from spanline.contracts.enums import ExportResult, InstrumentKind, Severity, SignalType, StatusCode
from spanline.contracts.errors import ExporterConfigurationError
from spanline.contracts.signals import Batch, HistogramValue, LogRecord, Status
from spanline.core.resource import Resource
from spanline.telemetry.exporters.console import ConsoleExporter
from spanline.telemetry.protocols import ExporterProtocol
from tests.telemetry.fixtures import TEST_SCOPE, make_log, make_metric, make_span

RESOURCE = Resource({"service.name": "orders"})

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def exporter() -> ConsoleExporter:
    """Create an unconfigured ConsoleExporter."""
    return ConsoleExporter()


@pytest.fixture
def stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_exporter(stream: StringIO) -> ConsoleExporter:
    """ConsoleExporter configured for JSON output into a StringIO."""
    exp = ConsoleExporter(stream=stream)
    exp.configure({"format": "json"})
    return exp


@pytest.fixture
def pretty_exporter(stream: StringIO) -> ConsoleExporter:
    """ConsoleExporter configured for pretty output into a StringIO."""
    exp = ConsoleExporter(stream=stream)
    exp.configure({"format": "pretty"})
    return exp


def output_lines(stream: StringIO) -> list[str]:
    return stream.getvalue().strip().splitlines()


# =============================================================================
# Protocol Compliance Tests
# =============================================================================


class TestProtocolCompliance:
    """Tests for ExporterProtocol compliance."""

    def test_implements_exporter_protocol(self, exporter: ConsoleExporter) -> None:
        assert isinstance(exporter, ExporterProtocol)

    def test_name_property_returns_console(self, exporter: ConsoleExporter) -> None:
        assert exporter.name == "console"
        assert exporter.name == ConsoleExporter._name

    def test_shutdown_is_idempotent(self, json_exporter: ConsoleExporter) -> None:
        json_exporter.shutdown()
        json_exporter.shutdown()


# =============================================================================
# Configuration Tests
# =============================================================================


class TestConfiguration:
    """Tests for configure() validation."""

    def test_default_configuration(self, exporter: ConsoleExporter) -> None:
        exporter.configure({})
        assert exporter._format == "json"
        assert exporter._output == "stdout"
        assert exporter._stream is sys.stdout

    def test_configure_stderr_output(self, exporter: ConsoleExporter) -> None:
        exporter.configure({"output": "stderr", "format": "pretty"})
        assert exporter._stream is sys.stderr
        assert exporter._format == "pretty"

    def test_stream_override_wins(self, stream: StringIO) -> None:
        exporter = ConsoleExporter(stream=stream)
        exporter.configure({"output": "stderr"})
        assert exporter._stream is stream

    def test_invalid_format_raises_error(self, exporter: ConsoleExporter) -> None:
        with pytest.raises(ExporterConfigurationError, match="Invalid format 'xml'") as exc_info:
            exporter.configure({"format": "xml"})
        assert exc_info.value.exporter_name == "console"

    def test_invalid_output_raises_error(self, exporter: ConsoleExporter) -> None:
        with pytest.raises(ExporterConfigurationError, match="Invalid output 'file'"):
            exporter.configure({"output": "file"})

    def test_non_string_format_raises_error(self, exporter: ConsoleExporter) -> None:
        with pytest.raises(ExporterConfigurationError, match="'format' must be a string"):
            exporter.configure({"format": 1})

    def test_unknown_config_keys_ignored(self, exporter: ConsoleExporter) -> None:
        """The OTLP options dict is accepted as-is."""
        exporter.configure({"endpoint": "http://localhost:4318", "headers": {}, "protocol": "console"})
        assert exporter._format == "json"


# =============================================================================
# JSON Output Tests
# =============================================================================


class TestJsonOutput:
    """Tests for JSON output format."""

    def test_one_line_per_signal(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        batch = Batch.of(SignalType.TRACES, [make_span("a"), make_span("b")], RESOURCE, sequence=7)

        assert json_exporter.export(batch, timeout=1.0) == ExportResult.SUCCESS

        lines = output_lines(stream)
        assert len(lines) == 2
        parsed = [json.loads(line) for line in lines]
        assert [p["name"] for p in parsed] == ["a", "b"]
        assert all(p["sequence"] == 7 for p in parsed)

    def test_span_fields(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        span = replace(
            make_span("charge", context=TraceContext(trace_id=0xAB, span_id=0xCD, parent_span_id=0xEF)),
            status=Status(StatusCode.ERROR, "declined"),
        )
        json_exporter.export(Batch.of(SignalType.TRACES, [span], RESOURCE), timeout=1.0)

        [parsed] = [json.loads(line) for line in output_lines(stream)]
        assert parsed["signal_type"] == "traces"
        assert parsed["trace_id"] == f"{0xAB:032x}"
        assert parsed["span_id"] == f"{0xCD:016x}"
        assert parsed["parent_span_id"] == f"{0xEF:016x}"
        assert parsed["kind"] == "INTERNAL"
        assert parsed["status"] == {"code": "ERROR", "message": "declined"}
        assert parsed["scope"] == TEST_SCOPE.name
        assert parsed["resource"] == {"service.name": "orders"}

    def test_metric_fields(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        json_exporter.export(
            Batch.of(SignalType.METRICS, [make_metric("requests", 3, attributes={"route": "/a"})], RESOURCE),
            timeout=1.0,
        )

        [parsed] = [json.loads(line) for line in output_lines(stream)]
        assert parsed["name"] == "requests"
        assert parsed["kind"] == "counter"
        assert parsed["value"] == 3
        assert parsed["attributes"] == {"route": "/a"}

    def test_histogram_value_serialized(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        value = HistogramValue(boundaries=(10.0,), bucket_counts=(1, 0), count=1, sum=2.0, min=2.0, max=2.0)
        point = replace(make_metric("latency", 0, kind=InstrumentKind.HISTOGRAM), value=value)

        json_exporter.export(Batch.of(SignalType.METRICS, [point], RESOURCE), timeout=1.0)

        [parsed] = [json.loads(line) for line in output_lines(stream)]
        assert parsed["value"]["bucket_counts"] == [1, 0]
        assert parsed["value"]["boundaries"] == [10.0]

    def test_log_fields(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        record = LogRecord(
            timestamp=5, severity=Severity.ERROR, body="boom", scope=TEST_SCOPE, trace_id=0x1, span_id=0x2
        )
        json_exporter.export(Batch.of(SignalType.LOGS, [record, make_log("plain")], RESOURCE), timeout=1.0)

        linked, plain = (json.loads(line) for line in output_lines(stream))
        assert linked["severity"] == "ERROR"
        assert linked["trace_id"] == f"{1:032x}"
        assert plain["trace_id"] is None
        assert plain["span_id"] is None

    def test_string_array_attribute_is_list(self, json_exporter: ConsoleExporter, stream: StringIO) -> None:
        json_exporter.export(
            Batch.of(SignalType.TRACES, [make_span(attributes={"tags": ["a", "b"]})], RESOURCE), timeout=1.0
        )
        [parsed] = [json.loads(line) for line in output_lines(stream)]
        assert parsed["attributes"]["tags"] == ["a", "b"]


# =============================================================================
# Pretty Output Tests
# =============================================================================


class TestPrettyOutput:
    """Tests for human-readable output."""

    def test_span_line(self, pretty_exporter: ConsoleExporter, stream: StringIO) -> None:
        span = make_span("checkout", context=TraceContext(trace_id=0xAB, span_id=0xCD), start_time=0, end_time=2_500_000)
        pretty_exporter.export(Batch.of(SignalType.TRACES, [span], RESOURCE), timeout=1.0)

        [line] = output_lines(stream)
        assert line.startswith("[span] checkout")
        assert f"trace={0xAB:032x}" in line
        assert "2.500ms" in line
        assert "status=UNSET" in line

    def test_metric_line_sorted_attributes(self, pretty_exporter: ConsoleExporter, stream: StringIO) -> None:
        point = make_metric("requests", 2, attributes={"z": 1, "a": 2})
        pretty_exporter.export(Batch.of(SignalType.METRICS, [point], RESOURCE), timeout=1.0)

        [line] = output_lines(stream)
        assert line == "[metric] requests counter=2 a=2, z=1"

    def test_log_line(self, pretty_exporter: ConsoleExporter, stream: StringIO) -> None:
        pretty_exporter.export(Batch.of(SignalType.LOGS, [make_log("ready")], RESOURCE), timeout=1.0)
        assert stream.getvalue() == "[log] INFO ready \n"


# =============================================================================
# Error Handling Tests
# =============================================================================


class BrokenStream:
    def write(self, s: str) -> int:
        raise OSError("Stream is broken")

    def flush(self) -> None:
        raise OSError("Flush failed")


class TestErrorHandling:
    """Tests for error handling (export must not raise)."""

    def test_stream_error_is_fatal_not_raised(self) -> None:
        exporter = ConsoleExporter(stream=BrokenStream())  # type: ignore[arg-type]
        exporter.configure({})

        with patch("spanline.telemetry.exporters.console.logger") as mock_logger:
            result = exporter.export(Batch.of(SignalType.TRACES, [make_span()], RESOURCE), timeout=1.0)

        assert result == ExportResult.FATAL
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "Failed to export telemetry batch"
        assert call_args[1]["exporter"] == "console"
        assert call_args[1]["signal_type"] == "traces"
        assert "Stream is broken" in call_args[1]["error"]

    def test_shutdown_does_not_raise_on_flush_error(self) -> None:
        exporter = ConsoleExporter(stream=BrokenStream())  # type: ignore[arg-type]

        with patch("spanline.telemetry.exporters.console.logger") as mock_logger:
            exporter.shutdown()
            mock_logger.warning.assert_called_once()


# =============================================================================
# Plugin Registration Tests
# =============================================================================


class TestPluginRegistration:
    """Tests for pluggy plugin registration."""

    def test_builtin_exporters_plugin_returns_console_exporter(self) -> None:
        from spanline.telemetry.exporters import BuiltinExportersPlugin

        plugin = BuiltinExportersPlugin()
        assert ConsoleExporter in plugin.spanline_get_exporters()

    def test_console_exporter_in_telemetry_package_exports(self) -> None:
        from spanline.telemetry import ConsoleExporter as ExportedConsoleExporter

        assert ExportedConsoleExporter is ConsoleExporter
