"""Build a TelemetryManager from RuntimeTelemetryConfig.

1. Discover exporter classes through the stalwart_get_exporters hook
2. Instantiate and configure the exporters named in config
3. Wrap them in a TelemetryManager

Usage:
    config = RuntimeTelemetryConfig.from_settings(settings.telemetry)
    manager = create_telemetry_manager(config)
    supervisor = PipelineSupervisor(telemetry=manager)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pluggy
import structlog

from stalwart.telemetry.config import RuntimeTelemetryConfig
from stalwart.telemetry.errors import TelemetryExporterError
from stalwart.telemetry.exporters import BuiltinExportersPlugin
from stalwart.telemetry.hookspecs import PROJECT_NAME, StalwartTelemetrySpec
from stalwart.telemetry.manager import TelemetryManager
from stalwart.telemetry.protocols import ExporterProtocol

logger = structlog.get_logger(__name__)


def _exporter_name(exporter_class: type[ExporterProtocol]) -> str:
    """Read the exporter name from the class-level ``_name`` or an instance.

    Raises:
        TelemetryExporterError: If the name is missing or not a non-empty string
    """
    name = exporter_class.__dict__.get("_name")
    if name is None:
        try:
            name = exporter_class().name
        except Exception as e:
            raise TelemetryExporterError(
                exporter_class.__name__,
                f"Failed to instantiate exporter class during discovery: {e}",
            ) from e
    if type(name) is not str or name == "":
        raise TelemetryExporterError(exporter_class.__name__, f"Exporter name must be a non-empty string, got {name!r}")
    return name


def discover_exporters(exporter_plugins: Iterable[Any] = ()) -> dict[str, type[ExporterProtocol]]:
    """Return the exporter registry (name -> class) from all registered plugins.

    Built-in exporters are always registered first.

    Raises:
        TelemetryExporterError: On invalid plugins, bad hook results or
            duplicate exporter names
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(StalwartTelemetrySpec)

    for plugin in [BuiltinExportersPlugin(), *exporter_plugins]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise TelemetryExporterError(
                "telemetry_plugins",
                f"Invalid telemetry exporter plugin {type(plugin).__name__}: {e}",
            ) from e

    registry: dict[str, type[ExporterProtocol]] = {}
    for hook_impl in plugin_manager.hook.stalwart_get_exporters.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            exporters = hook_impl.function()
        except Exception as e:
            raise TelemetryExporterError(
                "telemetry_plugins",
                f"Telemetry exporter plugin {plugin_name} failed in stalwart_get_exporters: {e}",
            ) from e
        if exporters is None or isinstance(exporters, str | bytes):
            raise TelemetryExporterError(
                "telemetry_plugins",
                f"stalwart_get_exporters in plugin {plugin_name} returned {type(exporters).__name__}; "
                "expected an iterable of exporter classes",
            )

        for exporter_class in exporters:
            name = _exporter_name(exporter_class)
            if name in registry:
                raise TelemetryExporterError(
                    name,
                    f"Duplicate telemetry exporter name '{name}': {registry[name].__name__} and {exporter_class.__name__}",
                )
            registry[name] = exporter_class

    return registry


def create_telemetry_manager(
    config: RuntimeTelemetryConfig,
    *,
    exporter_plugins: Iterable[Any] = (),
) -> TelemetryManager | None:
    """Create a TelemetryManager, or return None if telemetry is disabled.

    Raises:
        TelemetryExporterError: If discovery fails, an exporter name is
            unknown, or an exporter rejects its options
    """
    if not config.enabled:
        logger.debug("Telemetry disabled", reason="config.enabled=False")
        return None

    registry = discover_exporters(exporter_plugins)

    exporters: list[ExporterProtocol] = []
    for exporter_config in config.exporter_configs:
        try:
            exporter_class = registry[exporter_config.name]
        except KeyError:
            raise TelemetryExporterError(
                exporter_config.name,
                f"Unknown exporter. Available exporters: {sorted(registry)}",
            ) from None

        exporter = exporter_class()
        exporter.configure(exporter_config.options)
        exporters.append(exporter)
        logger.debug("Exporter configured", exporter=exporter_config.name, options_keys=sorted(exporter_config.options))

    if not exporters:
        logger.warning("Telemetry enabled but no exporters configured")

    return TelemetryManager(config, exporters=exporters)
