# src/spanline/telemetry/factory.py
"""Factory functions for creating the configured exporter.

This module provides the glue between configuration (TelemetrySettings)
and the exporter instance shared by the three batch schedulers. It handles:
1. Discovering exporter classes via telemetry pluggy hooks
2. Mapping the configured protocol to an exporter name
3. Instantiating and configuring that exporter

Usage:
    from spanline.core.config import load_settings
    from spanline.telemetry.factory import create_exporter

    settings = load_settings(Path("telemetry.yaml"))
    exporter = create_exporter(settings)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pluggy

from spanline.contracts.enums import ExportProtocol
from spanline.contracts.errors import ExporterConfigurationError
from spanline.core.config import TelemetrySettings
from spanline.core.logging import get_logger
from spanline.telemetry.exporters import BuiltinExportersPlugin
from spanline.telemetry.hookspecs import PROJECT_NAME, SpanlineTelemetrySpec
from spanline.telemetry.protocols import ExporterProtocol

logger = get_logger(__name__)

# Configured protocol -> registered exporter name
PROTOCOL_EXPORTERS: dict[ExportProtocol, str] = {
    ExportProtocol.HTTP_PROTOBUF: "otlp_http",
    ExportProtocol.GRPC: "otlp_grpc",
    ExportProtocol.CONSOLE: "console",
}


def _resolve_exporter_name(exporter_class: type[ExporterProtocol]) -> str:
    """Resolve exporter name from class metadata or a temporary instance.

    Args:
        exporter_class: Exporter class returned from hook discovery.

    Returns:
        Exporter name used in telemetry config.

    Raises:
        ExporterConfigurationError: If the class cannot be instantiated for name
            resolution or resolves to an invalid name.
    """
    try:
        class_name = exporter_class.__name__
    except AttributeError as e:  # pragma: no cover - plugin code boundary
        raise ExporterConfigurationError(
            "telemetry_plugins",
            f"Invalid exporter declaration without __name__: {exporter_class!r}",
        ) from e

    # Prefer class-level _name when provided to avoid unnecessary instantiation.
    class_dict = exporter_class.__dict__
    if "_name" in class_dict:
        class_name_hint = class_dict["_name"]
        if type(class_name_hint) is str and class_name_hint != "":
            return class_name_hint
        raise ExporterConfigurationError(
            class_name,
            f"Exporter class attribute _name must be a non-empty string, got {class_name_hint!r}",
        )

    try:
        exporter_instance = exporter_class()
    except Exception as e:  # pragma: no cover - plugin code boundary
        raise ExporterConfigurationError(
            class_name,
            f"Failed to instantiate exporter class during discovery: {e}",
        ) from e

    resolved_name = exporter_instance.name
    if type(resolved_name) is not str or resolved_name == "":
        raise ExporterConfigurationError(
            class_name,
            f"Exporter name must be a non-empty string, got {resolved_name!r}",
        )

    return resolved_name


def discover_exporter_registry(
    exporter_plugins: Iterable[Any] = (),
) -> dict[str, type[ExporterProtocol]]:
    """Discover telemetry exporters via pluggy hooks.

    Registers built-in exporters plus any additional plugin objects provided
    by the caller, then calls ``spanline_get_exporters`` hooks to build the
    runtime name->class registry.

    Args:
        exporter_plugins: Optional additional plugin objects implementing
            ``spanline_get_exporters``.

    Returns:
        Mapping of exporter name to exporter class.

    Raises:
        ExporterConfigurationError: If plugin registration fails, exporter names
            are invalid, or duplicate exporter names are discovered.
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(SpanlineTelemetrySpec)

    plugins_to_register: list[Any] = [BuiltinExportersPlugin(), *list(exporter_plugins)]
    for plugin in plugins_to_register:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            # PluginValidationError: hook spec mismatch (wrong method names, etc.)
            # ValueError: duplicate plugin object or plugin name already registered
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise ExporterConfigurationError(
                "telemetry_plugins",
                f"Invalid telemetry exporter plugin {type(plugin).__name__}: {e}",
            ) from e

    registry: dict[str, type[ExporterProtocol]] = {}
    for hook_impl in plugin_manager.hook.spanline_get_exporters.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            exporters = hook_impl.function()
        except Exception as e:
            raise ExporterConfigurationError(
                "telemetry_plugins",
                f"Telemetry exporter plugin {plugin_name} failed in spanline_get_exporters: {e}",
            ) from e

        if exporters is None or type(exporters) in (str, bytes):
            raise ExporterConfigurationError(
                "telemetry_plugins",
                f"spanline_get_exporters in plugin {plugin_name} returned {type(exporters).__name__}; "
                "expected iterable of exporter classes",
            )
        try:
            exporter_iter = iter(exporters)
        except TypeError as e:
            raise ExporterConfigurationError(
                "telemetry_plugins",
                f"spanline_get_exporters in plugin {plugin_name} returned {type(exporters).__name__}; "
                "expected iterable of exporter classes",
            ) from e

        for exporter_class in exporter_iter:
            exporter_name = _resolve_exporter_name(exporter_class)
            if exporter_name in registry:
                existing = registry[exporter_name].__name__
                duplicate = exporter_class.__name__
                raise ExporterConfigurationError(
                    exporter_name,
                    f"Duplicate telemetry exporter name '{exporter_name}' discovered: {existing} and {duplicate}",
                )
            registry[exporter_name] = exporter_class

    return registry


def create_exporter(
    settings: TelemetrySettings,
    *,
    exporter_plugins: Iterable[Any] = (),
    exporter_name: str | None = None,
) -> ExporterProtocol:
    """Create and configure the exporter for the configured protocol.

    Args:
        settings: Validated telemetry settings.
        exporter_plugins: Optional additional exporter plugin objects providing
            ``spanline_get_exporters`` hooks.
        exporter_name: Registered exporter to use instead of the protocol
            default (lets a plugin exporter replace a built-in one).

    Raises:
        ExporterConfigurationError: If exporter discovery fails, the exporter
            name is unknown, or exporter configuration fails.
    """
    exporter_registry = discover_exporter_registry(exporter_plugins)
    name = exporter_name or PROTOCOL_EXPORTERS[settings.exporter.protocol]

    # Look up exporter class - raises ExporterConfigurationError if unknown
    try:
        exporter_class = exporter_registry[name]
    except KeyError:
        available = sorted(exporter_registry.keys())
        raise ExporterConfigurationError(
            exporter_name=name,
            message=f"Unknown exporter. Available exporters: {available}",
        ) from None

    options = settings.exporter.model_dump()
    exporter = exporter_class()
    exporter.configure(options)
    logger.debug(
        "exporter_configured",
        exporter=name,
        protocol=settings.exporter.protocol.value,
        endpoint=settings.exporter.effective_endpoint,
    )
    return exporter
