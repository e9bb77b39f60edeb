"""pluggy hook specifications for telemetry exporters.

Usage (shipping an exporter from another package):
    from stalwart.telemetry.hookspecs import hookimpl

    class MyExporterPlugin:
        @hookimpl
        def stalwart_get_exporters(self):
            return [MyExporter]

    manager = create_telemetry_manager(config, exporter_plugins=[MyExporterPlugin()])
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from stalwart.telemetry.protocols import ExporterProtocol

PROJECT_NAME = "stalwart"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class StalwartTelemetrySpec:
    """Hook specifications for telemetry exporter plugins."""

    @hookspec
    def stalwart_get_exporters(self) -> list[type["ExporterProtocol"]]:  # type: ignore[empty-body]
        """Return exporter classes (not instances) implementing ExporterProtocol."""
