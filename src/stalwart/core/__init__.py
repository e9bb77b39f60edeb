"""Configuration loading and logging setup."""

from stalwart.core.config import (
    CircuitBreakerSettings,
    DelayStrategySettings,
    ExponentialDelaySettings,
    ExporterSettings,
    FixedDelaySettings,
    LinearDelaySettings,
    RetryPolicySettings,
    SupervisionSettings,
    TelemetrySettings,
    load_settings,
    parse_settings,
)
from stalwart.core.logging import bind_run_context, clear_run_context, configure_logging

__all__ = [
    "CircuitBreakerSettings",
    "DelayStrategySettings",
    "ExponentialDelaySettings",
    "ExporterSettings",
    "FixedDelaySettings",
    "LinearDelaySettings",
    "RetryPolicySettings",
    "SupervisionSettings",
    "TelemetrySettings",
    "bind_run_context",
    "clear_run_context",
    "configure_logging",
    "load_settings",
    "parse_settings",
]
