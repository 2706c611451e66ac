"""
Configuration schema and loading for the telemetry pipeline.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. Invalid endpoints and
non-positive thresholds fail fast here, at startup, rather than silently
disabling export later.

Three ways to obtain settings:
- TelemetrySettings(...) directly (tests, programmatic setup)
- load_settings(path): YAML file + SPANLINE_* environment overrides
- settings_from_env(): the standard OTEL_* environment variables
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from spanline.contracts.enums import ExportProtocol, OverflowPolicy, ProcessorName, SamplingStrategy
from spanline.contracts.errors import ConfigurationError

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

# Header / option names whose values are masked by resolve_config()
_SECRET_KEY_PATTERN = re.compile(r"(authorization|token|secret|password|api[-_]?key)", re.IGNORECASE)

_DEFAULT_ENDPOINTS: dict[ExportProtocol, str] = {
    ExportProtocol.GRPC: "http://localhost:4317",
    ExportProtocol.HTTP_PROTOBUF: "http://localhost:4318",
    ExportProtocol.CONSOLE: "",
}


def _validate_http_url(value: str, field_name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{field_name} must be an http(s) URL with a host, got {value!r}")
    return value


class ServiceSettings(BaseModel):
    """Identity of the producing service, used to build the Resource."""

    model_config = {"frozen": True}

    name: str = Field(default="unknown_service", min_length=1, description="service.name resource attribute")
    version: str | None = Field(default=None, description="service.version resource attribute")
    environment: str | None = Field(default=None, description="deployment.environment resource attribute")
    namespace: str | None = Field(default=None, description="service.namespace resource attribute")
    resource_attributes: dict[str, str | bool | int | float] = Field(
        default_factory=dict,
        description="Extra resource attributes (upserted over detected values)",
    )
    detect_environment: bool = Field(
        default=True,
        description="Run process/host/container/Kubernetes resource detectors",
    )


class OAuth2Settings(BaseModel):
    """OAuth2 client-credentials flow for exporter authentication."""

    model_config = {"frozen": True}

    token_url: str = Field(description="Token endpoint URL")
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    audience: str | None = Field(default=None, description="Sent as the 'audience' endpoint parameter")
    scopes: list[str] = Field(default_factory=list)

    @field_validator("token_url")
    @classmethod
    def validate_token_url(cls, v: str) -> str:
        return _validate_http_url(v, "token_url")


class ExporterSettings(BaseModel):
    """Where and how batches are sent."""

    model_config = {"frozen": True}

    protocol: ExportProtocol = Field(default=ExportProtocol.HTTP_PROTOBUF, description="Export protocol selection")
    endpoint: str | None = Field(
        default=None,
        description="Collector endpoint URI (defaults to localhost:4318 for HTTP, 4317 for gRPC)",
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers / gRPC metadata")
    bearer_token: str | None = Field(default=None, description="Sent as 'Authorization: Bearer <token>'")
    oauth2: OAuth2Settings | None = Field(default=None, description="OAuth2 client-credentials authentication")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-export deadline")
    compression: Literal["none", "gzip"] = Field(default="none")
    insecure: bool | None = Field(
        default=None,
        description="gRPC only: plaintext channel. Defaults to True for http:// endpoints",
    )
    format: Literal["json", "pretty"] = Field(default="json", description="Console only: output format")
    output: Literal["stdout", "stderr"] = Field(default="stdout", description="Console only: output stream")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_http_url(v, "endpoint")

    @model_validator(mode="after")
    def validate_single_auth_method(self) -> ExporterSettings:
        if self.bearer_token is not None and self.oauth2 is not None:
            raise ValueError("configure either bearer_token or oauth2, not both")
        return self

    @property
    def effective_endpoint(self) -> str:
        """Configured endpoint, or the protocol's localhost default."""
        if self.endpoint is not None:
            return self.endpoint
        return _DEFAULT_ENDPOINTS[self.protocol]


class BatchSettings(BaseModel):
    """Buffer and batch thresholds, shared by all three signal types."""

    model_config = {"frozen": True}

    max_batch_size: int = Field(default=512, gt=0, description="Release a batch once this many signals are buffered")
    max_delay_seconds: float = Field(default=5.0, gt=0, description="Release a partial batch after this delay")
    max_queue_size: int = Field(default=2048, gt=0, description="Buffer capacity per signal type")
    max_in_flight: int = Field(default=2, ge=1, le=8, description="Concurrent exports per signal type")
    overflow_policy: OverflowPolicy = Field(default=OverflowPolicy.DROP_NEWEST)

    @model_validator(mode="after")
    def validate_batch_fits_queue(self) -> BatchSettings:
        if self.max_batch_size > self.max_queue_size:
            raise ValueError(
                f"max_batch_size ({self.max_batch_size}) must be <= max_queue_size ({self.max_queue_size})",
            )
        return self


class RetrySettings(BaseModel):
    """Export retry behavior for retryable failures."""

    model_config = {"frozen": True}

    max_retries: int = Field(default=5, ge=0, description="Retries after the first attempt")
    initial_backoff_seconds: float = Field(default=0.5, gt=0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=5.0, gt=0, description="Maximum backoff delay")
    multiplier: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")


class SamplingSettings(BaseModel):
    """Head sampling configuration."""

    model_config = {"frozen": True}

    strategy: SamplingStrategy = Field(default=SamplingStrategy.PARENT_RATIO)
    ratio: float = Field(default=1.0, ge=0.0, le=1.0, description="Fraction of root traces sampled")


class ProcessorSettings(BaseModel):
    """Attribute processor chain configuration."""

    model_config = {"frozen": True}

    enabled: list[ProcessorName] = Field(
        default_factory=lambda: [
            ProcessorName.ROUTE_EXCLUSION,
            ProcessorName.REDACTION,
            ProcessorName.TRUNCATION,
        ],
        description="Processors to run (always executed in canonical order)",
    )
    max_attribute_length: int = Field(default=1024, gt=0, description="Truncate longer string attributes")
    excluded_routes: list[str] = Field(
        default_factory=lambda: ["/health*", "/ready*", "/live*"],
        description="Glob patterns; matching operations are dropped before buffering",
    )
    extra_attributes: dict[str, str | bool | int | float] = Field(
        default_factory=dict,
        description="Static attributes added by the enrichment processor",
    )
    redact_keys: list[str] = Field(
        default_factory=lambda: ["password", "secret", "token", "authorization", "api_key"],
        description="Attribute key fragments whose values are masked entirely",
    )


class SignalSettings(BaseModel):
    """Per-signal enablement."""

    model_config = {"frozen": True}

    traces: bool = True
    metrics: bool = True
    logs: bool = True


class TelemetrySettings(BaseModel):
    """Top-level telemetry configuration.

    This is the single source of truth for pipeline configuration.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Master switch; disabled pipelines record nothing")
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    exporter: ExporterSettings = Field(default_factory=ExporterSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    processors: ProcessorSettings = Field(default_factory=ProcessorSettings)
    signals: SignalSettings = Field(default_factory=SignalSettings)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0, description="Overall shutdown deadline")
    metric_export_interval_seconds: float = Field(default=60.0, gt=0, description="Metric collection interval")
    install_shutdown_hooks: bool = Field(default=True, description="Register atexit and SIGTERM shutdown hooks")


# =============================================================================
# Loading
# =============================================================================


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)  # None if no default specified
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (will likely fail validation)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def load_settings(config_path: Path) -> TelemetrySettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (SPANLINE_*) - highest priority
    2. Config file (YAML)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: SPANLINE_EXPORTER__ENDPOINT for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated TelemetrySettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Explicit check for file existence (Dynaconf silently accepts missing files)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="SPANLINE",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; convert to lowercase for Pydantic
    # Also filter out internal Dynaconf settings
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)

    return TelemetrySettings(**raw_config)


def _parse_key_value_list(raw: str, variable: str) -> dict[str, str]:
    """Parse the W3C-style 'k1=v1,k2=v2' lists used by OTEL_* variables."""
    result: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"{variable}: malformed entry {item!r}, expected key=value")
        result[unquote(key.strip())] = unquote(value.strip())
    return result


def _parse_number(raw: str, variable: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{variable} must be numeric, got {raw!r}") from None


def _sampler_from_env(name: str, arg: str | None) -> dict[str, Any]:
    name = name.strip().lower()
    ratio = _parse_number(arg, "OTEL_TRACES_SAMPLER_ARG", float) if arg else None
    if name == "always_on":
        return {"strategy": SamplingStrategy.ALWAYS_ON}
    if name == "always_off":
        return {"strategy": SamplingStrategy.ALWAYS_OFF}
    if name == "traceidratio":
        return {"strategy": SamplingStrategy.RATIO, "ratio": 1.0 if ratio is None else ratio}
    if name == "parentbased_traceidratio":
        return {"strategy": SamplingStrategy.PARENT_RATIO, "ratio": 1.0 if ratio is None else ratio}
    if name == "parentbased_always_on":
        return {"strategy": SamplingStrategy.PARENT_RATIO, "ratio": 1.0}
    if name == "parentbased_always_off":
        return {"strategy": SamplingStrategy.PARENT_RATIO, "ratio": 0.0}
    raise ConfigurationError(f"OTEL_TRACES_SAMPLER: unsupported sampler {name!r}")


def settings_from_env(environ: Mapping[str, str] | None = None) -> TelemetrySettings:
    """Build settings from the standard OpenTelemetry environment variables.

    Durations in OTEL_* variables are milliseconds.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: If a variable cannot be parsed
        ValidationError: If the resulting values are out of range
    """
    env = os.environ if environ is None else environ
    service: dict[str, Any] = {}
    exporter: dict[str, Any] = {}
    batch: dict[str, Any] = {}
    processors: dict[str, Any] = {}
    root: dict[str, Any] = {}

    if env.get("OTEL_SDK_DISABLED", "").strip().lower() == "true":
        root["enabled"] = False

    resource_attributes: dict[str, Any] = {}
    if env.get("OTEL_RESOURCE_ATTRIBUTES"):
        resource_attributes = _parse_key_value_list(env["OTEL_RESOURCE_ATTRIBUTES"], "OTEL_RESOURCE_ATTRIBUTES")
        if "service.name" in resource_attributes:
            service["name"] = resource_attributes.pop("service.name")
        if "service.version" in resource_attributes:
            service["version"] = resource_attributes.pop("service.version")
        if "deployment.environment" in resource_attributes:
            service["environment"] = resource_attributes.pop("deployment.environment")
        service["resource_attributes"] = resource_attributes
    # OTEL_SERVICE_NAME takes precedence over service.name in OTEL_RESOURCE_ATTRIBUTES
    if env.get("OTEL_SERVICE_NAME"):
        service["name"] = env["OTEL_SERVICE_NAME"]
    if env.get("DEPLOYMENT_ENVIRONMENT"):
        service["environment"] = env["DEPLOYMENT_ENVIRONMENT"]

    if env.get("OTEL_EXPORTER_OTLP_PROTOCOL"):
        exporter["protocol"] = env["OTEL_EXPORTER_OTLP_PROTOCOL"].strip().lower()
    if env.get("OTEL_EXPORTER_OTLP_ENDPOINT"):
        exporter["endpoint"] = env["OTEL_EXPORTER_OTLP_ENDPOINT"].strip()
    if env.get("OTEL_EXPORTER_OTLP_HEADERS"):
        exporter["headers"] = _parse_key_value_list(env["OTEL_EXPORTER_OTLP_HEADERS"], "OTEL_EXPORTER_OTLP_HEADERS")
    if env.get("OTEL_EXPORTER_OTLP_TIMEOUT"):
        exporter["timeout_seconds"] = _parse_number(env["OTEL_EXPORTER_OTLP_TIMEOUT"], "OTEL_EXPORTER_OTLP_TIMEOUT", float) / 1000
    if env.get("OTEL_EXPORTER_OTLP_COMPRESSION"):
        exporter["compression"] = env["OTEL_EXPORTER_OTLP_COMPRESSION"].strip().lower()

    if env.get("OTEL_BSP_MAX_EXPORT_BATCH_SIZE"):
        batch["max_batch_size"] = _parse_number(env["OTEL_BSP_MAX_EXPORT_BATCH_SIZE"], "OTEL_BSP_MAX_EXPORT_BATCH_SIZE", int)
    if env.get("OTEL_BSP_SCHEDULE_DELAY"):
        batch["max_delay_seconds"] = _parse_number(env["OTEL_BSP_SCHEDULE_DELAY"], "OTEL_BSP_SCHEDULE_DELAY", float) / 1000
    if env.get("OTEL_BSP_MAX_QUEUE_SIZE"):
        batch["max_queue_size"] = _parse_number(env["OTEL_BSP_MAX_QUEUE_SIZE"], "OTEL_BSP_MAX_QUEUE_SIZE", int)

    if env.get("OTEL_TRACES_SAMPLER"):
        root["sampling"] = _sampler_from_env(env["OTEL_TRACES_SAMPLER"], env.get("OTEL_TRACES_SAMPLER_ARG"))

    if env.get("OTEL_METRIC_EXPORT_INTERVAL"):
        root["metric_export_interval_seconds"] = (
            _parse_number(env["OTEL_METRIC_EXPORT_INTERVAL"], "OTEL_METRIC_EXPORT_INTERVAL", float) / 1000
        )

    if env.get("SPANLINE_PROCESSORS") is not None:
        processors["enabled"] = [p.strip() for p in env["SPANLINE_PROCESSORS"].split(",") if p.strip()]
    if env.get("SPANLINE_EXCLUDED_ROUTES") is not None:
        processors["excluded_routes"] = [p.strip() for p in env["SPANLINE_EXCLUDED_ROUTES"].split(",") if p.strip()]
    if env.get("SPANLINE_MAX_ATTRIBUTE_LENGTH"):
        processors["max_attribute_length"] = _parse_number(
            env["SPANLINE_MAX_ATTRIBUTE_LENGTH"], "SPANLINE_MAX_ATTRIBUTE_LENGTH", int
        )

    for key, section in (("service", service), ("exporter", exporter), ("batch", batch), ("processors", processors)):
        if section:
            root[key] = section
    return TelemetrySettings(**root)


def _mask_secrets(value: Any, key: str = "") -> Any:
    if isinstance(value, dict):
        return {k: _mask_secrets(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_mask_secrets(item, key) for item in value]
    if isinstance(value, str) and value and _SECRET_KEY_PATTERN.search(key) and not key.endswith("_url"):
        return "***"
    return value


def resolve_config(settings: TelemetrySettings) -> dict[str, Any]:
    """Convert validated settings to a dict for display.

    Secrets (bearer token, OAuth2 client secret, auth-like headers) are
    masked. The returned dict must NOT be used to build an exporter.
    """
    data = settings.model_dump(mode="json")
    return _mask_secrets(data)
