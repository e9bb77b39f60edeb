"""Console exporter: one line per supervision event on stdout or stderr."""

from __future__ import annotations

import json
import sys
from dataclasses import asdict, fields
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TextIO

import structlog

from stalwart.telemetry.errors import TelemetryExporterError

if TYPE_CHECKING:
    from stalwart.contracts.events import TelemetryEvent

logger = structlog.get_logger(__name__)

_BASE_FIELDS = frozenset({"timestamp", "run_id"})


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class ConsoleExporter:
    """Write events as JSON lines or a human-readable summary.

    Options:
        format: "json" (default) or "pretty"
        output: "stdout" (default) or "stderr"

    Example configuration:
        telemetry:
          exporters:
            - name: console
              options:
                format: pretty
                output: stderr
    """

    _name = "console"

    _VALID_FORMATS: frozenset[str] = frozenset({"json", "pretty"})
    _VALID_OUTPUTS: frozenset[str] = frozenset({"stdout", "stderr"})

    def __init__(self) -> None:
        self._format = "json"
        self._stream: TextIO = sys.stdout

    @property
    def name(self) -> str:
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        """Validate and apply options.

        Raises:
            TelemetryExporterError: If format or output is invalid
        """
        format_value = self._option(config, "format", "json", self._VALID_FORMATS)
        output_value = self._option(config, "output", "stdout", self._VALID_OUTPUTS)
        self._format = format_value
        self._stream = sys.stdout if output_value == "stdout" else sys.stderr
        logger.debug("Console exporter configured", format=format_value, output=output_value)

    def _option(self, config: dict[str, Any], key: str, default: str, valid: frozenset[str]) -> str:
        value = config.get(key, default)
        if not isinstance(value, str):
            raise TelemetryExporterError(self._name, f"'{key}' must be a string, got {type(value).__name__}")
        if value not in valid:
            raise TelemetryExporterError(self._name, f"Invalid {key} '{value}'. Must be one of: {', '.join(sorted(valid))}")
        return value

    def export(self, event: TelemetryEvent) -> None:
        """Write one event. Never raises."""
        try:
            if self._format == "json":
                line = json.dumps(self.serialize(event))
            else:
                line = self.format_pretty(event)
            print(line, file=self._stream)
        except Exception as e:
            logger.warning(
                "Failed to export telemetry event",
                exporter=self._name,
                event_type=type(event).__name__,
                error=str(e),
            )

    @staticmethod
    def serialize(event: TelemetryEvent) -> dict[str, Any]:
        """Event as a JSON-safe dict with an ``event_type`` key."""
        data = {key: _plain(value) for key, value in asdict(event).items()}
        data["event_type"] = type(event).__name__
        return data

    @staticmethod
    def format_pretty(event: TelemetryEvent) -> str:
        """Format: [TIMESTAMP] EventType: run_id (key=value, ...)"""
        details = ", ".join(
            f"{f.name}={_plain(getattr(event, f.name))}"
            for f in sorted(fields(event), key=lambda f: f.name)
            if f.name not in _BASE_FIELDS and getattr(event, f.name) not in (None, "")
        )
        head = f"[{event.timestamp.isoformat()}] {type(event).__name__}: {event.run_id}"
        return f"{head} ({details})" if details else head

    def flush(self) -> None:
        try:
            self._stream.flush()
        except Exception as e:
            logger.warning("Failed to flush console stream", exporter=self._name, error=str(e))

    def close(self) -> None:
        # The exporter does not own stdout/stderr
        pass
