"""Per-node circuit breaker over consecutive item failures.

Retries and dead-lettering handle one bad item at a time. When every item a
node sees is failing (a downstream API is down, credentials expired), the
breaker pauses dispatch instead of burning each item's retry budget:

- CLOSED: items dispatch normally. Transient and permanent item failures
  increment a consecutive-failure count; any success resets it.
- OPEN: reached when the count hits ``failure_threshold``. Nothing new is
  dispatched for ``open_seconds``. Items already executing finish normally.
- HALF_OPEN: one trial item is dispatched. Success closes the circuit, an
  item failure opens it again for another ``open_seconds``.

Skips, node faults and fatal signals are not item failures and neither trip
nor close the breaker. Held items stay buffered while the circuit is open,
so backpressure reaches upstream producers the same way it does during a
node restart.

The breaker is plain data owned by the node's driver thread. The timer that
moves OPEN to HALF_OPEN lives on the shared RetryScheduler.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from stalwart.contracts.enums import CircuitState
from stalwart.contracts.errors import InvalidPolicyConfig
from stalwart.contracts.events import CircuitClosed, CircuitOpened

if TYPE_CHECKING:
    from stalwart.core.config import CircuitBreakerSettings


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _validate_threshold(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPolicyConfig("failure_threshold", value, f"must be an int, got {type(value).__name__}")
    if value < 1:
        raise InvalidPolicyConfig("failure_threshold", value, "must be >= 1")


def _validate_open_seconds(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidPolicyConfig("open_seconds", value, f"must be a number, got {type(value).__name__}")
    if not math.isfinite(value) or value < 0:
        raise InvalidPolicyConfig("open_seconds", value, "must be finite and >= 0")


@dataclass(frozen=True, slots=True)
class CircuitBreakerPolicy:
    """When a node's circuit opens and how long it stays open."""

    failure_threshold: int = 5
    open_seconds: float = 30.0

    def __post_init__(self) -> None:
        _validate_threshold(self.failure_threshold)
        _validate_open_seconds(self.open_seconds)

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings) -> CircuitBreakerPolicy:
        """Factory from the CircuitBreakerSettings config model."""
        return cls(failure_threshold=settings.failure_threshold, open_seconds=settings.open_seconds)


class CircuitBreaker:
    """Breaker state for one node.

    Thread Safety:
        NOT thread-safe. Only the node's driver thread calls into it.
    """

    def __init__(
        self,
        policy: CircuitBreakerPolicy,
        *,
        node_id: str,
        run_id: str,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._policy = policy
        self._node_id = node_id
        self._run_id = run_id
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_in_flight = False

    @property
    def policy(self) -> CircuitBreakerPolicy:
        return self._policy

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def allows_dispatch(self) -> bool:
        """True when a new item execution may start."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    def on_dispatch(self) -> None:
        """Record that an item was dispatched; in HALF_OPEN it is the trial."""
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = True

    def release_trial(self) -> None:
        """Forget the trial item after an outcome that proves nothing either way."""
        self._trial_in_flight = False

    def record_success(self) -> CircuitClosed | None:
        """Reset the failure count.

        Returns:
            CircuitClosed if a half-open trial just succeeded, else None.
        """
        self._consecutive_failures = 0
        if self._state != CircuitState.HALF_OPEN:
            return None
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        return CircuitClosed(timestamp=self._clock(), run_id=self._run_id, node_id=self._node_id)

    def record_failure(self) -> CircuitOpened | None:
        """Count an item failure.

        Returns:
            CircuitOpened if this failure tripped the breaker, else None.
            Failures of items that were already executing when the circuit
            opened are counted but do not re-open it.
        """
        self._consecutive_failures += 1
        if self._state == CircuitState.OPEN:
            return None
        if self._state == CircuitState.CLOSED and self._consecutive_failures < self._policy.failure_threshold:
            return None
        self._state = CircuitState.OPEN
        self._trial_in_flight = False
        return CircuitOpened(
            timestamp=self._clock(),
            run_id=self._run_id,
            node_id=self._node_id,
            consecutive_failures=self._consecutive_failures,
            open_seconds=self._policy.open_seconds,
        )

    def half_open(self) -> bool:
        """Move OPEN to HALF_OPEN once the open interval elapsed.

        Returns:
            True if the state changed.
        """
        if self._state != CircuitState.OPEN:
            return False
        self._state = CircuitState.HALF_OPEN
        self._trial_in_flight = False
        return True
