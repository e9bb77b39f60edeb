"""All states, kinds and modes used across subsystem boundaries."""

from enum import StrEnum


class ItemState(StrEnum):
    """Lifecycle of one item on one node.

    PENDING -> EXECUTING -> {SUCCEEDED, RETRYING, DEAD_LETTERED, SKIPPED}
    RETRYING -> PENDING once the retry timer elapses.
    """

    PENDING = "pending"
    EXECUTING = "executing"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


class NodeState(StrEnum):
    """Lifecycle of a supervised node.

    RUNNING -> FAULTED -> {RESTARTING -> RUNNING, STOPPED_FATAL}
    Any non-terminal state -> STOPPED on pipeline shutdown.
    """

    CREATED = "created"
    RUNNING = "running"
    FAULTED = "faulted"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    STOPPED_FATAL = "stopped_fatal"

    @property
    def is_terminal(self) -> bool:
        """True when no further transitions can happen."""
        return self in (NodeState.STOPPED, NodeState.STOPPED_FATAL)


class FailureKind(StrEnum):
    """Classification of a raw failure, produced by an ErrorClassifier.

    Values:
        TRANSIENT: Item-level, retryable within the item retry budget
        PERMANENT: Item-level, never retried (immediate dead-letter)
        NODE: Node-level, retryable via node restart
        FATAL: Explicit upstream fatal signal, stops the node and pipeline
        SKIP: Item-level, dropped without retry or dead-letter
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NODE = "node"
    FATAL = "fatal"
    SKIP = "skip"


class FatalReason(StrEnum):
    """Why a node was declared fatal."""

    RESTART_LIMIT = "restart_limit"
    SEQUENTIAL_LIMIT = "sequential_limit"
    UPSTREAM_FATAL = "upstream_fatal"
    MISSING_PREREQUISITE = "missing_prerequisite"


class CircuitState(StrEnum):
    """Per-node circuit breaker state.

    CLOSED -> OPEN after too many consecutive item failures.
    OPEN -> HALF_OPEN once the open interval elapses.
    HALF_OPEN -> CLOSED on a successful trial item, back to OPEN on a failure.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DelayKind(StrEnum):
    """Discriminator for the delay strategy variants."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class TelemetryGranularity(StrEnum):
    """Granularity of telemetry events emitted by the TelemetryManager.

    Values:
        LIFECYCLE: Run start/finish plus node restart, fatal and circuit events
        ITEMS: Lifecycle + item exhaustion (dead-letter) and skip events
        FULL: Items + every scheduled retry
    """

    LIFECYCLE = "lifecycle"
    ITEMS = "items"
    FULL = "full"


class SupervisionStatus(StrEnum):
    """Final status reported when a supervised pipeline finishes."""

    COMPLETED = "completed"
    FATAL = "fatal"
    CANCELLED = "cancelled"
