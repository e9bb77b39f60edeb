"""Built-in telemetry exporters.

- ConsoleExporter: JSON lines or human-readable output on stdout/stderr
- MemoryExporter: keeps events in a list (tests, embedding applications)

Registered through BuiltinExportersPlugin's stalwart_get_exporters hook.
"""

from stalwart.telemetry.exporters.console import ConsoleExporter
from stalwart.telemetry.exporters.memory import MemoryExporter
from stalwart.telemetry.hookspecs import hookimpl


class BuiltinExportersPlugin:
    """Plugin that registers built-in telemetry exporters."""

    @hookimpl
    def stalwart_get_exporters(self) -> list[type]:
        return [ConsoleExporter, MemoryExporter]


__all__ = [
    "BuiltinExportersPlugin",
    "ConsoleExporter",
    "MemoryExporter",
]
