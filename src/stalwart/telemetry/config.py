"""Runtime telemetry configuration.

Frozen dataclasses built from TelemetrySettings. The manager and factory
only ever see these, never the pydantic models.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stalwart.contracts.enums import TelemetryGranularity

if TYPE_CHECKING:
    from stalwart.core.config import TelemetrySettings


@dataclass(frozen=True, slots=True)
class ExporterConfig:
    """One exporter: plugin name plus the options passed to configure()."""

    name: str
    options: dict[str, Any]

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("exporter name cannot be empty")


@dataclass(frozen=True, slots=True)
class RuntimeTelemetryConfig:
    """Runtime configuration for the diagnostic event stream.

    Field Origins (all from TelemetrySettings):
        - enabled: direct
        - granularity: parsed from str to TelemetryGranularity
        - queue_size: direct
        - fail_on_total_exporter_failure: direct
        - max_consecutive_failures: direct
        - exporter_configs: settings.exporters converted to ExporterConfig
    """

    enabled: bool
    granularity: TelemetryGranularity
    queue_size: int
    fail_on_total_exporter_failure: bool
    max_consecutive_failures: int
    exporter_configs: tuple[ExporterConfig, ...]

    def __post_init__(self) -> None:
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be >= 1, got {self.queue_size}")
        if self.max_consecutive_failures < 1:
            raise ValueError(f"max_consecutive_failures must be >= 1, got {self.max_consecutive_failures}")

    @classmethod
    def default(cls) -> RuntimeTelemetryConfig:
        """Telemetry is opt-in: disabled, items granularity, no exporters."""
        return cls(
            enabled=False,
            granularity=TelemetryGranularity.ITEMS,
            queue_size=1000,
            fail_on_total_exporter_failure=False,
            max_consecutive_failures=10,
            exporter_configs=(),
        )

    @classmethod
    def from_settings(cls, settings: TelemetrySettings) -> RuntimeTelemetryConfig:
        """Factory from the TelemetrySettings config model.

        Raises:
            ValueError: If granularity is not a known level
        """
        return cls(
            enabled=settings.enabled,
            granularity=TelemetryGranularity(settings.granularity.lower()),
            queue_size=settings.queue_size,
            fail_on_total_exporter_failure=settings.fail_on_total_exporter_failure,
            max_consecutive_failures=settings.max_consecutive_failures,
            exporter_configs=tuple(ExporterConfig(name=exp.name, options=dict(exp.options)) for exp in settings.exporters),
        )
