"""Diagnostic event stream for supervised pipelines.

Node supervisors hand events to a TelemetryManager, which filters them by
granularity, queues them without blocking and exports them on a background
thread. Exporters are discovered through pluggy hooks.

Usage:
    from stalwart.telemetry import RuntimeTelemetryConfig, create_telemetry_manager

    manager = create_telemetry_manager(RuntimeTelemetryConfig.from_settings(settings.telemetry))
"""

from stalwart.telemetry.config import ExporterConfig, RuntimeTelemetryConfig
from stalwart.telemetry.errors import TelemetryExporterError
from stalwart.telemetry.factory import create_telemetry_manager, discover_exporters
from stalwart.telemetry.filtering import should_emit
from stalwart.telemetry.hookspecs import hookimpl
from stalwart.telemetry.manager import TelemetryManager
from stalwart.telemetry.protocols import ExporterProtocol

__all__ = [
    "ExporterConfig",
    "ExporterProtocol",
    "RuntimeTelemetryConfig",
    "TelemetryExporterError",
    "TelemetryManager",
    "create_telemetry_manager",
    "discover_exporters",
    "hookimpl",
    "should_emit",
]
