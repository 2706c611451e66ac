# src/spanline/telemetry/exporters/otlp_grpc.py
"""OTLP/gRPC exporter (protocol 'grpc').

Sends Export*ServiceRequest messages through the opentelemetry-proto
service stubs over a grpcio channel.

Status mapping (the OTLP retryable set):
    OK                                                  -> SUCCESS
    CANCELLED, DEADLINE_EXCEEDED, RESOURCE_EXHAUSTED,
    ABORTED, OUT_OF_RANGE, UNAVAILABLE, DATA_LOSS       -> RETRYABLE
    everything else (UNAUTHENTICATED, INVALID_ARGUMENT) -> FATAL
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import grpc
from opentelemetry.proto.collector.logs.v1.logs_service_pb2_grpc import LogsServiceStub
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import MetricsServiceStub
from opentelemetry.proto.collector.trace.v1.trace_service_pb2_grpc import TraceServiceStub
from pydantic import ValidationError

from spanline.contracts.enums import ExportProtocol, ExportResult, SignalType
from spanline.contracts.errors import ExporterConfigurationError
from spanline.contracts.signals import Batch
from spanline.core.config import ExporterSettings
from spanline.core.logging import get_logger
from spanline.telemetry.exporters.auth import AuthProvider, TokenFetchError, auth_from_settings
from spanline.telemetry.exporters.encoding import encode_batch

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES: frozenset[grpc.StatusCode] = frozenset(
    {
        grpc.StatusCode.CANCELLED,
        grpc.StatusCode.DEADLINE_EXCEEDED,
        grpc.StatusCode.RESOURCE_EXHAUSTED,
        grpc.StatusCode.ABORTED,
        grpc.StatusCode.OUT_OF_RANGE,
        grpc.StatusCode.UNAVAILABLE,
        grpc.StatusCode.DATA_LOSS,
    }
)


def classify_grpc_status(code: grpc.StatusCode | None) -> ExportResult:
    """Map a gRPC status code to an export result."""
    if code == grpc.StatusCode.OK:
        return ExportResult.SUCCESS
    if code in RETRYABLE_STATUS_CODES:
        return ExportResult.RETRYABLE
    return ExportResult.FATAL


def _target_from_endpoint(endpoint: str) -> tuple[str, bool]:
    """'http://collector:4317' -> ('collector:4317', scheme_is_plaintext)."""
    parsed = urlparse(endpoint)
    port = parsed.port or 4317
    return f"{parsed.hostname}:{port}", parsed.scheme == "http"


class OTLPGrpcExporter:
    """Export batches via OTLP over gRPC.

    Configuration options (ExporterSettings fields):
        endpoint: Collector URL (default http://localhost:4317)
        headers: Sent as call metadata (keys lower-cased)
        bearer_token / oauth2: Authentication
        timeout_seconds: Per-call deadline upper bound
        compression: "none" or "gzip"
        insecure: Plaintext channel (defaults to True for http:// endpoints)

    Thread safety:
        grpc channels and stubs are thread-safe.
    """

    _name = "otlp_grpc"

    def __init__(self, *, channel: grpc.Channel | None = None) -> None:
        """Initialize unconfigured exporter.

        Args:
            channel: Optional pre-built channel (tests, custom credentials).
                The exporter does not close a channel it did not create.
        """
        self._channel = channel
        self._owns_channel = channel is None
        self._stubs: dict[SignalType, Callable[..., Any]] = {}
        self._auth: AuthProvider | None = None
        self._configured = False
        self._shutdown = False
        self._shutdown_lock = threading.Lock()

    @property
    def name(self) -> str:
        """Exporter name for configuration reference."""
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the exporter and open the channel.

        Raises:
            ExporterConfigurationError: If the configuration is invalid
        """
        try:
            settings = ExporterSettings.model_validate(config)
        except ValidationError as e:
            raise ExporterConfigurationError(self._name, f"invalid configuration: {e}") from e
        if settings.protocol != ExportProtocol.GRPC:
            raise ExporterConfigurationError(
                self._name,
                f"protocol {settings.protocol.value!r} is not served by the gRPC exporter",
            )

        target, plaintext = _target_from_endpoint(settings.endpoint or "http://localhost:4317")
        insecure = plaintext if settings.insecure is None else settings.insecure
        if self._channel is None:
            compression = grpc.Compression.Gzip if settings.compression == "gzip" else grpc.Compression.NoCompression
            if insecure:
                self._channel = grpc.insecure_channel(target, compression=compression)
            else:
                self._channel = grpc.secure_channel(target, grpc.ssl_channel_credentials(), compression=compression)

        self._stubs = {
            SignalType.TRACES: TraceServiceStub(self._channel).Export,
            SignalType.METRICS: MetricsServiceStub(self._channel).Export,
            SignalType.LOGS: LogsServiceStub(self._channel).Export,
        }
        self._auth = auth_from_settings(settings)
        self._configured = True

        logger.debug(
            "OTLP/gRPC exporter configured",
            target=target,
            insecure=insecure,
            compression=settings.compression,
            headers_count=len(settings.headers),
            auth=type(self._auth).__name__,
        )

    def export(self, batch: Batch, timeout: float) -> ExportResult:
        """Send one batch. Never raises."""
        if not self._configured or self._auth is None:
            logger.warning("OTLP/gRPC exporter not configured, dropping batch", batch_size=len(batch))
            return ExportResult.FATAL
        if self._shutdown:
            return ExportResult.FATAL

        try:
            request = encode_batch(batch)
        except Exception as e:
            logger.error(
                "Failed to encode OTLP batch",
                exporter=self._name,
                signal_type=batch.signal_type.value,
                error=str(e),
            )
            return ExportResult.FATAL

        try:
            metadata = tuple((key.lower(), value) for key, value in self._auth.headers().items())
        except TokenFetchError as e:
            logger.warning("OAuth2 token unavailable", exporter=self._name, error=str(e), retryable=e.retryable)
            return ExportResult.RETRYABLE if e.retryable else ExportResult.FATAL

        try:
            response = self._stubs[batch.signal_type](request, timeout=timeout, metadata=metadata or None)
        except grpc.RpcError as e:
            code = e.code() if hasattr(e, "code") else None
            result = classify_grpc_status(code)
            if code == grpc.StatusCode.UNAUTHENTICATED:
                self._auth.invalidate()
            logger.debug(
                "OTLP/gRPC export failed",
                signal_type=batch.signal_type.value,
                status=code.name if code is not None else "UNKNOWN",
                result=result.value,
            )
            return result

        self._log_partial_success(batch, response)
        return ExportResult.SUCCESS

    def _log_partial_success(self, batch: Batch, response: Any) -> None:
        partial = getattr(response, "partial_success", None)
        if partial is None:
            return
        rejected = (
            getattr(partial, "rejected_spans", 0)
            or getattr(partial, "rejected_data_points", 0)
            or getattr(partial, "rejected_log_records", 0)
        )
        if rejected:
            logger.warning(
                "Collector rejected part of a batch",
                exporter=self._name,
                signal_type=batch.signal_type.value,
                rejected=rejected,
                batch_size=len(batch),
                error_message=partial.error_message,
            )

    def shutdown(self) -> None:
        """Close the channel (if owned). Idempotent."""
        with self._shutdown_lock:
            if self._shutdown:
                return
            self._shutdown = True
        if self._auth is not None:
            self._auth.close()
        if self._owns_channel and self._channel is not None:
            self._channel.close()
