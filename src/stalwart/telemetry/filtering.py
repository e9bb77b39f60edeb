"""Event filtering based on telemetry granularity.

- LIFECYCLE: supervision start/finish, node restarts, fatal stops and
  circuit breaker transitions
- ITEMS: lifecycle + items routed to the dead-letter path or skipped
- FULL: items + every scheduled retry

This is the single source of truth for granularity filtering; the
TelemetryManager consults it before queueing an event.
"""

from stalwart.contracts.enums import TelemetryGranularity
from stalwart.contracts.events import (
    CircuitClosed,
    CircuitOpened,
    ItemExhausted,
    ItemSkipped,
    NodeFatal,
    NodeRestarted,
    RetryScheduled,
    SupervisionFinished,
    SupervisionStarted,
    TelemetryEvent,
)


def should_emit(event: TelemetryEvent, granularity: TelemetryGranularity) -> bool:
    """Return True if ``event`` passes the configured granularity.

    Unknown event types always pass, so new events are visible before this
    filter learns about them.

    Example:
        >>> from datetime import UTC, datetime
        >>> event = NodeRestarted(
        ...     timestamp=datetime.now(tz=UTC),
        ...     run_id="run-1",
        ...     node_id="enrich",
        ...     total_restarts=1,
        ...     sequential_restarts=1,
        ... )
        >>> should_emit(event, TelemetryGranularity.LIFECYCLE)
        True
    """
    match event:
        case SupervisionStarted() | SupervisionFinished() | NodeRestarted() | NodeFatal():
            return True

        case CircuitOpened() | CircuitClosed():
            return True

        case ItemExhausted() | ItemSkipped():
            return granularity in (TelemetryGranularity.ITEMS, TelemetryGranularity.FULL)

        # Retries are the high-volume stream
        case RetryScheduled():
            return granularity == TelemetryGranularity.FULL

        case _:
            return True
