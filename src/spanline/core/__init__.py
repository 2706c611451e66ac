# src/spanline/core/__init__.py
"""Core infrastructure: Configuration, Resource, Logging."""

from spanline.core.config import (
    BatchSettings,
    ExporterSettings,
    OAuth2Settings,
    ProcessorSettings,
    RetrySettings,
    SamplingSettings,
    ServiceSettings,
    SignalSettings,
    TelemetrySettings,
    load_settings,
    resolve_config,
    settings_from_env,
)
from spanline.core.logging import configure_logging
from spanline.core.resource import Resource, build_resource, detect_resource

__all__ = [
    "BatchSettings",
    "ExporterSettings",
    "OAuth2Settings",
    "ProcessorSettings",
    "Resource",
    "RetrySettings",
    "SamplingSettings",
    "ServiceSettings",
    "SignalSettings",
    "TelemetrySettings",
    "build_resource",
    "configure_logging",
    "detect_resource",
    "load_settings",
    "resolve_config",
    "settings_from_env",
]
