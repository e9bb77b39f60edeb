"""Protocol definitions for telemetry exporters."""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stalwart.contracts.events import TelemetryEvent


@runtime_checkable
class ExporterProtocol(Protocol):
    """Ships supervision events to an external destination.

    Lifecycle:
        1. Discovery: stalwart_get_exporters hook returns exporter classes
        2. Instantiation: the factory creates an instance with no arguments
        3. Configuration: configure() receives the exporter's options
        4. Operation: export() is called for each event (must not raise)
        5. Shutdown: flush() then close()

    Error handling:
        - configure() MUST raise TelemetryExporterError on invalid options
        - export() MUST NOT raise
        - close() MUST be idempotent

    Thread Safety:
        export() is always called from the telemetry export thread, never
        concurrently with itself.
    """

    @property
    def name(self) -> str:
        """Name used in the ``telemetry.exporters`` config list."""
        ...

    def configure(self, config: dict[str, Any]) -> None:
        """Apply exporter options.

        Raises:
            TelemetryExporterError: If options are invalid
        """
        ...

    def export(self, event: "TelemetryEvent") -> None:
        """Export a single event. Must not raise."""
        ...

    def flush(self) -> None:
        """Deliver anything buffered. No-op if nothing is buffered."""
        ...

    def close(self) -> None:
        """Release resources. Safe to call more than once."""
        ...
