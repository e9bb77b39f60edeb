"""Failure taxonomy for resilient node execution.

Two families live here:

- Construction-time validation errors (InvalidStrategyConfig,
  InvalidPolicyConfig, MissingRestartPrerequisite). These surface synchronously to whoever is assembling
  the pipeline and are never raised at run time.
- Run-time failures (TransientItemFailure, PermanentItemFailure, SkipItem,
  NodeFault, FatalPipelineFault). Node code raises the first four to tell the supervisor
  how a failure should be handled; the supervisor raises FatalPipelineFault
  when restart limits are exhausted.

An ErrorClassifier may also map arbitrary third-party exceptions onto these
kinds, so node code is not forced to raise them directly.
"""

from collections.abc import Sequence
from typing import Any, NotRequired, TypedDict


class ExecutionError(TypedDict):
    """Schema for failure payloads handed to outcome routers.

    Used when an item is dead-lettered or a node is declared fatal.
    """

    exception: str  # String representation of the exception
    type: str  # Exception class name (e.g., "TimeoutError")
    kind: NotRequired[str]  # FailureKind value assigned by the classifier


# =============================================================================
# Construction-time validation
# =============================================================================


class InvalidStrategyConfig(ValueError):
    """Raised when a delay strategy is built with invalid parameters.

    Attributes:
        field: Name of the offending parameter
        value: The rejected value
    """

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid delay strategy: {field}={value!r} {reason}")


class InvalidPolicyConfig(ValueError):
    """Raised when a retry policy is built with invalid limits.

    Attributes:
        field: Name of the offending limit
        value: The rejected value
    """

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid retry policy: {field}={value!r} {reason}")


class MissingRestartPrerequisite(ValueError):
    """Raised when a restartable node lacks what it needs to restart.

    Attributes:
        node_id: The node being assembled
        missing: Names of the unavailable prerequisites
    """

    def __init__(self, node_id: str, missing: Sequence[str]) -> None:
        self.node_id = node_id
        self.missing = tuple(missing)
        super().__init__(f"Node '{node_id}' allows restarts but is missing restart prerequisites: {', '.join(self.missing)}")


# =============================================================================
# Run-time failures
# =============================================================================


class TransientItemFailure(Exception):
    """An item failed in a way that may succeed on a later attempt.

    Drives the item state machine's RETRYING path while retry budget remains.
    """


class PermanentItemFailure(Exception):
    """An item failed in a way retries cannot fix (e.g., malformed payload).

    Never retried regardless of remaining budget: the item is dead-lettered
    immediately.
    """


class SkipItem(Exception):
    """The node asks for an item to be dropped.

    The item is neither retried nor dead-lettered; the outcome router is told
    it was skipped. Skips do not count towards the circuit breaker.
    """


class NodeFault(Exception):
    """A failure not attributable to a single item.

    Raised when the node's execution context itself is broken (lost
    connection, corrupted internal state). Handled by restarting the node,
    bounded by the total and sequential restart limits.
    """


class FatalPipelineFault(Exception):
    """Terminal failure that halts pipeline progress.

    Raised by the supervisor when a node exhausts its restart limits, or by
    node code as an explicit upstream fatal signal.

    Attributes:
        node_id: Node that went fatal (None when raised by node code before
            the supervisor attached context)
        reason: Short machine-readable reason (FatalReason value)
    """

    def __init__(self, message: str, *, node_id: str | None = None, reason: str | None = None) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(message)


class PipelineCancelled(Exception):
    """Raised when work is submitted to a pipeline that has been shut down."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' is no longer accepting items: pipeline was shut down")
