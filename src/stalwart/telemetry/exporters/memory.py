"""In-memory exporter: collects events for inspection."""

import threading
from typing import Any

from stalwart.contracts.events import TelemetryEvent
from stalwart.telemetry.errors import TelemetryExporterError


class MemoryExporter:
    """Keeps exported events in order, optionally bounded.

    Options:
        max_events: Keep only the newest N events (default: unbounded)
    """

    _name = "memory"

    def __init__(self) -> None:
        self._events: list[TelemetryEvent] = []
        self._max_events: int | None = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def events(self) -> list[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    def events_of(self, event_type: type[TelemetryEvent]) -> list[TelemetryEvent]:
        return [event for event in self.events if isinstance(event, event_type)]

    def configure(self, config: dict[str, Any]) -> None:
        max_events = config.get("max_events")
        if max_events is not None and (type(max_events) is not int or max_events < 1):
            raise TelemetryExporterError(self._name, f"'max_events' must be a positive int, got {max_events!r}")
        self._max_events = max_events

    def export(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self._max_events is not None and len(self._events) > self._max_events:
                del self._events[0]

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self._closed = True
