"""Protocols for the collaborators the supervisor drives.

The retry supervisor owns no business logic. It calls into:
- SupervisedNode: the node's item processing and re-initialisation
- OutcomeRouter: where succeeded, skipped and dead-lettered items go
- TelemetrySink: the diagnostic event stream (TelemetryManager satisfies it)

All are structural protocols so graph code can supply plain objects.
"""

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stalwart.contracts.errors import ExecutionError, FatalPipelineFault
    from stalwart.contracts.events import TelemetryEvent


@runtime_checkable
class SupervisedNode(Protocol):
    """One stage (source, transform or sink) executed under supervision.

    Lifecycle:
        1. process() is called once per attempt of each item, possibly from
           several worker threads at once (up to the node's concurrency limit)
        2. restart() is called after a node-level fault, from the node's
           driver thread, while no new items are dispatched

    Raising from process():
        - TransientItemFailure / PermanentItemFailure for item-level failures
        - NodeFault when the execution context itself is broken
        - Any other exception is mapped by the ErrorClassifier
    """

    def process(self, item_id: str, payload: Any) -> Any:
        """Process one item and return its result."""
        ...

    def restart(self) -> None:
        """Re-initialise node-local execution state after a fault."""
        ...


@runtime_checkable
class RestartPrerequisites(Protocol):
    """Optional capability of a SupervisedNode that can only restart with help.

    A node that replays buffered input on restart (for example one that needs
    a materialisation buffer) reports what it is missing. The supervisor checks
    at construction time when restarts are allowed, and again before every
    restart() call; a non-empty result means the node cannot be restarted.
    """

    def missing_restart_prerequisites(self) -> Sequence[str]:
        """Names of the prerequisites that are currently unavailable."""
        ...


@runtime_checkable
class OutcomeRouter(Protocol):
    """Receives terminal item outcomes from a node supervisor.

    Called from the node's driver thread. Implementations should hand the
    result off quickly (buffer or enqueue) rather than doing heavy work.
    """

    def item_succeeded(self, node_id: str, item_id: str, result: Any) -> None:
        """Route a successfully processed item downstream."""
        ...

    def item_dead_lettered(self, node_id: str, item_id: str, payload: Any, error: "ExecutionError", attempts: int) -> None:
        """Route an item that exhausted its retries or failed permanently."""
        ...

    def item_skipped(self, node_id: str, item_id: str, payload: Any, error: "ExecutionError") -> None:
        """Record an item the node asked to drop without dead-lettering."""
        ...


class TelemetrySink(Protocol):
    """Consumer of diagnostic events. handle_event() must never block."""

    def handle_event(self, event: "TelemetryEvent") -> None:
        """Accept an event for asynchronous processing."""
        ...


class NullOutcomeRouter:
    """Outcome router that discards everything.

    Useful for library use where nothing consumes outcomes (e.g., sinks whose
    process() already persisted the result).
    """

    def item_succeeded(self, node_id: str, item_id: str, result: Any) -> None:
        pass

    def item_dead_lettered(self, node_id: str, item_id: str, payload: Any, error: "ExecutionError", attempts: int) -> None:
        pass

    def item_skipped(self, node_id: str, item_id: str, payload: Any, error: "ExecutionError") -> None:
        pass


FatalHandler = Callable[[str, "FatalPipelineFault"], None]
"""Graph-level callback invoked with (node_id, fault) when a node goes fatal."""
