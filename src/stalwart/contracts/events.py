"""Diagnostic events emitted by the retry supervisor.

These events cross the engine<->telemetry boundary. The supervisor emits
them fire-and-forget; the TelemetryManager filters, queues and exports them
to external observability platforms.

Event categories:
- Lifecycle: Supervision start/finish
- Node-level: Restart, fatal escalation and circuit breaker transitions
- Item-level: Retry scheduling, dead-letter exhaustion and skips
"""

from dataclasses import dataclass
from datetime import datetime

from stalwart.contracts.enums import FatalReason, SupervisionStatus


@dataclass(frozen=True, slots=True)
class TelemetryEvent:
    """Base class for all telemetry events.

    All events include:
    - timestamp: When the event occurred (UTC)
    - run_id: Supervised pipeline run this event belongs to

    Events are immutable (frozen) for thread-safety and to prevent
    accidental modification during export.
    """

    timestamp: datetime
    run_id: str


# =============================================================================
# Lifecycle Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class SupervisionStarted(TelemetryEvent):
    """Emitted when a PipelineSupervisor starts its nodes.

    Attributes:
        node_count: Number of registered nodes
    """

    node_count: int


@dataclass(frozen=True, slots=True)
class SupervisionFinished(TelemetryEvent):
    """Emitted once when a PipelineSupervisor shuts down.

    Attributes:
        status: completed, fatal or cancelled
        duration_ms: Time between start and shutdown
    """

    status: SupervisionStatus
    duration_ms: float


# =============================================================================
# Node-Level Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeRestarted(TelemetryEvent):
    """Emitted when a faulted node has been re-initialised and is running again."""

    node_id: str
    total_restarts: int
    sequential_restarts: int


@dataclass(frozen=True, slots=True)
class NodeFatal(TelemetryEvent):
    """Emitted exactly once when a node is declared fatal.

    Attributes:
        node_id: The node that stopped
        reason: Which limit was exceeded, or upstream_fatal
        detail: Human-readable description of the triggering fault
    """

    node_id: str
    reason: FatalReason
    detail: str = ""


@dataclass(frozen=True, slots=True)
class CircuitOpened(TelemetryEvent):
    """Emitted when a node's circuit breaker stops dispatching items.

    Attributes:
        consecutive_failures: Item failures in a row that tripped the breaker
        open_seconds: How long dispatch stays paused before a trial item
    """

    node_id: str
    consecutive_failures: int
    open_seconds: float


@dataclass(frozen=True, slots=True)
class CircuitClosed(TelemetryEvent):
    """Emitted when a trial item succeeds and normal dispatch resumes."""

    node_id: str


# =============================================================================
# Item-Level Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryScheduled(TelemetryEvent):
    """Emitted when a transient item failure is rescheduled.

    Attributes:
        attempt: Retry number (the first retry is attempt 1)
        delay_seconds: Wait before the item is re-queued
    """

    node_id: str
    item_id: str
    attempt: int
    delay_seconds: float


@dataclass(frozen=True, slots=True)
class ItemExhausted(TelemetryEvent):
    """Emitted when an item is routed to the dead-letter path.

    Attributes:
        attempts: Total executions of the item, original attempt included
        permanent: True if the item was dead-lettered by a permanent failure
            rather than by running out of retries
    """

    node_id: str
    item_id: str
    attempts: int
    permanent: bool = False


@dataclass(frozen=True, slots=True)
class ItemSkipped(TelemetryEvent):
    """Emitted when an item is dropped on request without dead-lettering."""

    node_id: str
    item_id: str
    attempts: int
