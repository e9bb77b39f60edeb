"""Telemetry-specific exceptions.

Only for the diagnostic event stream. Supervision failures use the taxonomy
in stalwart.contracts.errors.
"""


class TelemetryExporterError(Exception):
    """Raised when an exporter cannot be discovered, configured or kept alive.

    Never raised from export(): exporters log their own failures.

    Attributes:
        exporter_name: Name of the exporter that failed ("all" for total failure)
        message: Human-readable error description
    """

    def __init__(self, exporter_name: str, message: str) -> None:
        self.exporter_name = exporter_name
        self.message = message
        super().__init__(f"Exporter '{exporter_name}' failed: {message}")
