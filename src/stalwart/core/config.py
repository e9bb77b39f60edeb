"""
Configuration schema and loading for supervised pipelines.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Example YAML:
    retry:
      max_item_retries: 3
      max_node_restart_attempts: 5
      max_sequential_node_attempts: 3
    delay:
      kind: exponential
      base_seconds: 0.5
      multiplier: 2.0
      max_seconds: 30
    node_concurrency: 4
    circuit_breaker:
      failure_threshold: 10
      open_seconds: 60
    telemetry:
      enabled: true
      granularity: items
      exporters:
        - name: console
          options:
            format: json
"""

import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stalwart.contracts.errors import InvalidPolicyConfig, InvalidStrategyConfig


class RetryPolicySettings(BaseModel):
    """Item retry and node restart limits."""

    model_config = {"frozen": True}

    max_item_retries: int = Field(default=0, ge=0, description="Retries after the original item attempt")
    max_node_restart_attempts: int = Field(default=3, ge=0, description="Lifetime node restarts")
    max_sequential_node_attempts: int = Field(
        default=5,
        ge=0,
        description="Consecutive faulted attempts with no success in between",
    )


class FixedDelaySettings(BaseModel):
    """Constant delay between attempts."""

    model_config = {"frozen": True}

    kind: Literal["fixed"] = "fixed"
    delay_seconds: float = Field(default=1.0, ge=0, allow_inf_nan=False, description="Wait before every retry")


class LinearDelaySettings(BaseModel):
    """Delay growing by a constant increment per attempt."""

    model_config = {"frozen": True}

    kind: Literal["linear"] = "linear"
    base_seconds: float = Field(default=1.0, ge=0, allow_inf_nan=False)
    increment_seconds: float = Field(default=1.0, ge=0, allow_inf_nan=False)
    max_seconds: float = Field(default=60.0, ge=0, allow_inf_nan=False)

    @model_validator(mode="after")
    def validate_cap(self) -> "LinearDelaySettings":
        if self.max_seconds < self.base_seconds:
            raise ValueError(f"max_seconds ({self.max_seconds}) must be >= base_seconds ({self.base_seconds})")
        return self


class ExponentialDelaySettings(BaseModel):
    """Delay multiplied by a constant factor per attempt."""

    model_config = {"frozen": True}

    kind: Literal["exponential"] = "exponential"
    base_seconds: float = Field(default=1.0, ge=0, allow_inf_nan=False)
    multiplier: float = Field(default=2.0, gt=1.0, allow_inf_nan=False)
    max_seconds: float = Field(default=60.0, ge=0, allow_inf_nan=False)

    @model_validator(mode="after")
    def validate_cap(self) -> "ExponentialDelaySettings":
        if self.max_seconds < self.base_seconds:
            raise ValueError(f"max_seconds ({self.max_seconds}) must be >= base_seconds ({self.base_seconds})")
        return self


DelayStrategySettings = Annotated[
    FixedDelaySettings | LinearDelaySettings | ExponentialDelaySettings,
    Field(discriminator="kind"),
]


class ExporterSettings(BaseModel):
    """One telemetry exporter: plugin name plus its options."""

    model_config = {"frozen": True}

    name: str = Field(min_length=1, description="Exporter plugin name (e.g., console, memory)")
    options: dict[str, Any] = Field(default_factory=dict)


class TelemetrySettings(BaseModel):
    """Diagnostic event stream configuration."""

    model_config = {"frozen": True}

    enabled: bool = False
    granularity: Literal["lifecycle", "items", "full"] = "items"
    queue_size: int = Field(default=1000, gt=0, description="Events buffered before new ones are dropped")
    fail_on_total_exporter_failure: bool = False
    max_consecutive_failures: int = Field(default=10, gt=0)
    exporters: list[ExporterSettings] = Field(default_factory=list)

    @field_validator("granularity", mode="before")
    @classmethod
    def normalize_granularity(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class CircuitBreakerSettings(BaseModel):
    """Per-node circuit breaker over consecutive item failures."""

    model_config = {"frozen": True}

    failure_threshold: int = Field(default=5, gt=0, description="Consecutive item failures that open the circuit")
    open_seconds: float = Field(default=30.0, ge=0, allow_inf_nan=False, description="Pause before a trial item")


class SupervisionSettings(BaseModel):
    """Top-level configuration for a supervised pipeline run."""

    model_config = {"frozen": True}

    retry: RetryPolicySettings = Field(default_factory=RetryPolicySettings)
    delay: DelayStrategySettings = Field(default_factory=ExponentialDelaySettings)
    node_concurrency: int = Field(default=1, gt=0, description="Default worker threads per node")
    buffer_size: int = Field(default=64, gt=0, description="Items a node holds before submit() blocks")
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    circuit_breaker: CircuitBreakerSettings | None = Field(default=None, description="Disabled when omitted")

    @model_validator(mode="after")
    def validate_buffer(self) -> "SupervisionSettings":
        if self.buffer_size < self.node_concurrency:
            raise ValueError(f"buffer_size ({self.buffer_size}) must be >= node_concurrency ({self.node_concurrency})")
        return self


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(value: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values.

    Unresolvable references are left as-is so validation reports them.
    """

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        if match.group(2) is not None:
            return match.group(2)
        return match.group(0)

    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(item) for item in value]
    return value


def _first_error(exc: ValidationError, section: str) -> dict[str, Any] | None:
    for error in exc.errors():
        if error["loc"] and error["loc"][0] == section:
            return dict(error)
    return None


def parse_settings(raw_config: dict[str, Any]) -> SupervisionSettings:
    """Validate a raw config mapping.

    Validation errors in the ``retry`` section surface as InvalidPolicyConfig
    and errors in the ``delay`` section as InvalidStrategyConfig, the same
    types raised when RetryPolicy or a delay strategy is built in code.

    Raises:
        InvalidPolicyConfig: If retry limits are invalid
        InvalidStrategyConfig: If delay parameters are invalid
        ValidationError: For any other invalid setting
    """
    try:
        return SupervisionSettings(**raw_config)
    except ValidationError as exc:
        if (error := _first_error(exc, "retry")) is not None:
            field = str(error["loc"][-1]) if len(error["loc"]) > 1 else "retry"
            raise InvalidPolicyConfig(field, error.get("input"), error["msg"]) from exc
        if (error := _first_error(exc, "delay")) is not None:
            field = str(error["loc"][-1]) if len(error["loc"]) > 1 else "delay"
            raise InvalidStrategyConfig(field, error.get("input"), error["msg"]) from exc
        raise


def load_settings(config_path: Path) -> SupervisionSettings:
    """Load settings from a YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (STALWART_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Nested keys use a double underscore: STALWART_RETRY__MAX_ITEM_RETRIES=3.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        InvalidPolicyConfig / InvalidStrategyConfig / ValidationError: See parse_settings()
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="STALWART",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase top-level keys and a few internal ones
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    return parse_settings(_expand_env_vars(raw_config))
