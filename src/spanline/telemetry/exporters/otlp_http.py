# src/spanline/telemetry/exporters/otlp_http.py
"""OTLP/HTTP exporter (protocol 'http/protobuf').

POSTs binary protobuf Export*ServiceRequest messages to
<endpoint>/v1/traces, /v1/metrics and /v1/logs using httpx.

Status mapping:
    2xx                         -> SUCCESS (partial-success rejections logged)
    408, 429, 5xx (not 501/505) -> RETRYABLE
    timeouts, transport errors  -> RETRYABLE
    401, 403, other 4xx         -> FATAL
"""

from __future__ import annotations

import gzip
import threading
from typing import Any

import httpx
from google.protobuf.message import DecodeError
from opentelemetry.proto.collector.logs.v1.logs_service_pb2 import ExportLogsServiceResponse
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import ExportMetricsServiceResponse
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceResponse
from pydantic import ValidationError

from spanline.contracts.defaults import INTERNAL_DEFAULTS
from spanline.contracts.enums import ExportProtocol, ExportResult, SignalType
from spanline.contracts.errors import ExporterConfigurationError
from spanline.contracts.signals import Batch
from spanline.core.config import ExporterSettings
from spanline.core.logging import get_logger
from spanline.telemetry.exporters.auth import AuthProvider, TokenFetchError, auth_from_settings
from spanline.telemetry.exporters.encoding import encode_batch

logger = get_logger(__name__)

_SIGNAL_PATHS: dict[SignalType, str] = {
    SignalType.TRACES: "/v1/traces",
    SignalType.METRICS: "/v1/metrics",
    SignalType.LOGS: "/v1/logs",
}

_RETRYABLE_STATUS_CODES = frozenset({408, 429})
_NON_RETRYABLE_SERVER_CODES = frozenset({501, 505})


def classify_http_status(status_code: int) -> ExportResult:
    """Map an HTTP response status to an export result."""
    if 200 <= status_code < 300:
        return ExportResult.SUCCESS
    if status_code in _RETRYABLE_STATUS_CODES:
        return ExportResult.RETRYABLE
    if status_code >= 500 and status_code not in _NON_RETRYABLE_SERVER_CODES:
        return ExportResult.RETRYABLE
    return ExportResult.FATAL


def _rejected_count(signal_type: SignalType, content: bytes) -> tuple[int, str]:
    """Parse partial_success from a 2xx response body (empty body = none)."""
    if not content:
        return 0, ""
    if signal_type == SignalType.TRACES:
        traces = ExportTraceServiceResponse.FromString(content)
        return traces.partial_success.rejected_spans, traces.partial_success.error_message
    if signal_type == SignalType.METRICS:
        metrics = ExportMetricsServiceResponse.FromString(content)
        return metrics.partial_success.rejected_data_points, metrics.partial_success.error_message
    logs = ExportLogsServiceResponse.FromString(content)
    return logs.partial_success.rejected_log_records, logs.partial_success.error_message


class OTLPHttpExporter:
    """Export batches via OTLP over HTTP with protobuf encoding.

    Configuration options (ExporterSettings fields):
        endpoint: Collector base URL (default http://localhost:4318)
        headers: Extra request headers
        bearer_token / oauth2: Authentication
        timeout_seconds: Per-request timeout upper bound
        compression: "none" or "gzip"

    Example configuration:
        exporter:
          protocol: http/protobuf
          endpoint: https://otel-collector.example.com:4318
          bearer_token: ${OTEL_TOKEN}
          compression: gzip

    Thread safety:
        export() may be called concurrently; httpx.Client is thread-safe.
    """

    _name = "otlp_http"

    def __init__(self, *, transport: httpx.BaseTransport | None = None) -> None:
        """Initialize unconfigured exporter.

        Args:
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._transport = transport
        self._client: httpx.Client | None = None
        self._auth: AuthProvider | None = None
        self._endpoint = ""
        self._compression = "none"
        self._configured = False
        self._shutdown = False
        self._shutdown_lock = threading.Lock()

    @property
    def name(self) -> str:
        """Exporter name for configuration reference."""
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the exporter.

        Args:
            config: ExporterSettings fields as a dict

        Raises:
            ExporterConfigurationError: If the configuration is invalid
        """
        try:
            settings = ExporterSettings.model_validate(config)
        except ValidationError as e:
            raise ExporterConfigurationError(self._name, f"invalid configuration: {e}") from e
        if settings.protocol == ExportProtocol.GRPC:
            raise ExporterConfigurationError(self._name, "protocol 'grpc' requires the otlp_grpc exporter")

        self._endpoint = (settings.endpoint or "http://localhost:4318").rstrip("/")
        self._compression = settings.compression
        self._client = httpx.Client(
            transport=self._transport,
            timeout=settings.timeout_seconds,
            headers={"User-Agent": str(INTERNAL_DEFAULTS["http"]["user_agent"])},
        )
        self._auth = auth_from_settings(settings, client=self._client if settings.oauth2 else None)
        self._configured = True

        logger.debug(
            "OTLP/HTTP exporter configured",
            endpoint=self._endpoint,
            compression=self._compression,
            headers_count=len(settings.headers),
            auth=type(self._auth).__name__,
        )

    def url_for(self, signal_type: SignalType) -> str:
        return f"{self._endpoint}{_SIGNAL_PATHS[signal_type]}"

    def export(self, batch: Batch, timeout: float) -> ExportResult:
        """Send one batch. Never raises.

        Args:
            batch: Batch of a single signal type
            timeout: Seconds this request may take

        Returns:
            ExportResult classified from the response or transport error
        """
        if not self._configured or self._client is None or self._auth is None:
            logger.warning("OTLP/HTTP exporter not configured, dropping batch", batch_size=len(batch))
            return ExportResult.FATAL
        if self._shutdown:
            return ExportResult.FATAL

        try:
            body = encode_batch(batch).SerializeToString()
        except Exception as e:
            logger.error(
                "Failed to encode OTLP batch",
                exporter=self._name,
                signal_type=batch.signal_type.value,
                error=str(e),
            )
            return ExportResult.FATAL

        headers: dict[str, str] = {"Content-Type": "application/x-protobuf"}
        if self._compression == "gzip":
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        try:
            headers.update(self._auth.headers())
        except TokenFetchError as e:
            logger.warning("OAuth2 token unavailable", exporter=self._name, error=str(e), retryable=e.retryable)
            return ExportResult.RETRYABLE if e.retryable else ExportResult.FATAL

        url = self.url_for(batch.signal_type)
        try:
            response = self._client.post(url, content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException:
            logger.debug("OTLP/HTTP export timed out", url=url, timeout=timeout)
            return ExportResult.RETRYABLE
        except httpx.HTTPError as e:
            logger.debug("OTLP/HTTP transport error", url=url, error=str(e))
            return ExportResult.RETRYABLE

        result = classify_http_status(response.status_code)
        if result == ExportResult.SUCCESS:
            self._log_partial_success(batch, response.content)
            return result

        if response.status_code in (401, 403):
            self._auth.invalidate()
        logger.debug(
            "OTLP/HTTP export rejected",
            url=url,
            status_code=response.status_code,
            result=result.value,
        )
        return result

    def _log_partial_success(self, batch: Batch, content: bytes) -> None:
        try:
            rejected, message = _rejected_count(batch.signal_type, content)
        except DecodeError:
            # Some collectors answer 200 with a JSON or empty body
            return
        if rejected:
            logger.warning(
                "Collector rejected part of a batch",
                exporter=self._name,
                signal_type=batch.signal_type.value,
                rejected=rejected,
                batch_size=len(batch),
                error_message=message,
            )

    def shutdown(self) -> None:
        """Close the HTTP client. Idempotent."""
        with self._shutdown_lock:
            if self._shutdown:
                return
            self._shutdown = True
        if self._auth is not None:
            self._auth.close()
        if self._client is not None:
            self._client.close()
