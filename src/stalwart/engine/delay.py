"""Delay strategies: map a retry attempt number to a wait duration.

Three closed variants cover every backoff the supervisor supports:

- FixedDelay: the same wait for every attempt
- LinearDelay: base + increment * (attempt - 1), capped at max
- ExponentialDelay: base * multiplier ** (attempt - 1), capped at max

Attempt numbering: the first *retry* is attempt 1. The original execution is
attempt 0 and never consults a strategy.

The numeric model is delegated to tenacity's wait functions, which already
implement capping and saturate to the cap when the exponential term
overflows. compute_delay() is the single dispatch point over the variants.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tenacity import RetryCallState, wait_exponential, wait_fixed, wait_incrementing

from stalwart.contracts.enums import DelayKind
from stalwart.contracts.errors import InvalidStrategyConfig

if TYPE_CHECKING:
    from stalwart.core.config import DelayStrategySettings


def _validate_duration(field: str, value: Any) -> float:
    """Validate a duration in seconds and normalise it to float.

    Raises:
        InvalidStrategyConfig: If value is not a finite, non-negative number
    """
    # bool is an int subclass but never a meaningful duration
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidStrategyConfig(field, value, f"must be a number of seconds, got {type(value).__name__}")
    if not math.isfinite(value):
        raise InvalidStrategyConfig(field, value, "must be finite")
    if value < 0:
        raise InvalidStrategyConfig(field, value, "must be >= 0")
    return float(value)


@dataclass(frozen=True, slots=True)
class FixedDelay:
    """Constant wait between retries."""

    delay: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "delay", _validate_duration("delay", self.delay))

    @property
    def kind(self) -> DelayKind:
        return DelayKind.FIXED


@dataclass(frozen=True, slots=True)
class LinearDelay:
    """Wait that grows by a constant increment per attempt, up to max_delay."""

    base: float
    increment: float
    max_delay: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", _validate_duration("base", self.base))
        object.__setattr__(self, "increment", _validate_duration("increment", self.increment))
        object.__setattr__(self, "max_delay", _validate_duration("max_delay", self.max_delay))
        if self.max_delay < self.base:
            raise InvalidStrategyConfig("max_delay", self.max_delay, f"must be >= base ({self.base})")

    @property
    def kind(self) -> DelayKind:
        return DelayKind.LINEAR


@dataclass(frozen=True, slots=True)
class ExponentialDelay:
    """Wait that is multiplied by a constant factor per attempt, up to max_delay."""

    base: float
    multiplier: float
    max_delay: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", _validate_duration("base", self.base))
        object.__setattr__(self, "max_delay", _validate_duration("max_delay", self.max_delay))
        multiplier = self.multiplier
        if isinstance(multiplier, bool) or not isinstance(multiplier, int | float) or not math.isfinite(multiplier):
            raise InvalidStrategyConfig("multiplier", multiplier, "must be a finite number")
        if multiplier <= 1:
            raise InvalidStrategyConfig("multiplier", multiplier, "must be > 1")
        object.__setattr__(self, "multiplier", float(multiplier))
        if self.max_delay < self.base:
            raise InvalidStrategyConfig("max_delay", self.max_delay, f"must be >= base ({self.base})")

    @property
    def kind(self) -> DelayKind:
        return DelayKind.EXPONENTIAL


DelayStrategy = FixedDelay | LinearDelay | ExponentialDelay
"""Closed union of the supported delay strategies."""


def _attempt_state(attempt: int) -> RetryCallState:
    """Build the tenacity call state the wait functions read attempt_number from."""
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})  # type: ignore[arg-type]
    state.attempt_number = attempt
    return state


def compute_delay(strategy: DelayStrategy, attempt: int) -> float:
    """Compute the wait before retry number ``attempt``.

    Args:
        strategy: The node's bound delay strategy
        attempt: Retry number, starting at 1 for the first retry

    Returns:
        Non-negative wait in seconds. Capped variants never exceed max_delay;
        an exponential term too large to represent saturates to max_delay.

    Raises:
        ValueError: If attempt < 1 (the original execution never waits)
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    match strategy:
        case FixedDelay(delay=delay):
            wait = wait_fixed(delay)
        case LinearDelay(base=base, increment=increment, max_delay=max_delay):
            wait = wait_incrementing(start=base, increment=increment, max=max_delay)
        case ExponentialDelay(base=base, multiplier=multiplier, max_delay=max_delay):
            if base == 0:
                # 0 * inf would saturate to max_delay instead of staying at zero
                return 0.0
            wait = wait_exponential(multiplier=base, exp_base=multiplier, max=max_delay, min=0)
        case _:
            raise TypeError(f"Unknown delay strategy: {type(strategy).__name__}")

    return float(wait(_attempt_state(attempt)))


# =============================================================================
# Constructors
# =============================================================================


def fixed(delay: float) -> FixedDelay:
    """Fixed delay of ``delay`` seconds for every retry."""
    return FixedDelay(delay=delay)


def linear(base: float, increment: float, max_delay: float) -> LinearDelay:
    """Linear backoff: ``min(base + increment * (n - 1), max_delay)``."""
    return LinearDelay(base=base, increment=increment, max_delay=max_delay)


def exponential(base: float, multiplier: float, max_delay: float) -> ExponentialDelay:
    """Exponential backoff: ``min(base * multiplier ** (n - 1), max_delay)``."""
    return ExponentialDelay(base=base, multiplier=multiplier, max_delay=max_delay)


def default_strategy() -> ExponentialDelay:
    """Strategy used when nothing has been configured: 1s doubling, capped at 60s."""
    return ExponentialDelay(base=1.0, multiplier=2.0, max_delay=60.0)


def delay_from_settings(settings: DelayStrategySettings) -> DelayStrategy:
    """Build a delay strategy from validated settings.

    Args:
        settings: One of the discriminated delay settings models

    Returns:
        The matching DelayStrategy variant

    Raises:
        InvalidStrategyConfig: If the settings violate a strategy invariant
    """
    # Lazy import keeps engine.delay importable without pydantic settings loaded
    from stalwart.core.config import ExponentialDelaySettings, FixedDelaySettings, LinearDelaySettings

    match settings:
        case FixedDelaySettings():
            return FixedDelay(delay=settings.delay_seconds)
        case LinearDelaySettings():
            return LinearDelay(
                base=settings.base_seconds,
                increment=settings.increment_seconds,
                max_delay=settings.max_seconds,
            )
        case ExponentialDelaySettings():
            return ExponentialDelay(
                base=settings.base_seconds,
                multiplier=settings.multiplier,
                max_delay=settings.max_seconds,
            )
    raise TypeError(f"Unknown delay settings: {type(settings).__name__}")
