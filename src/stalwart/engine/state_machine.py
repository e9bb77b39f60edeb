"""Pure supervision state machine for one node.

Holds the item and node state machines as plain data, with no threads,
queues or timers. Every input returns a decision value describing the
transition taken, the delay to wait (if any) and the telemetry event the
caller must emit before treating the transition as complete.

Item state machine (per item):
    PENDING -> EXECUTING -> {SUCCEEDED, RETRYING, DEAD_LETTERED, SKIPPED}

Node state machine:
    RUNNING -> FAULTED -> {RESTARTING -> RUNNING, STOPPED_FATAL}

Escalation rules:
    A transient failure is retried while fewer than max_item_retries retries
    have been scheduled for the item; otherwise the item is dead-lettered.
    A permanent failure is dead-lettered immediately. A skip request drops
    the item without dead-lettering it.

    A node fault increments total_restarts and sequential_restarts. The node
    goes fatal when total_restarts > max_node_restart_attempts, or when
    sequential_restarts reaches max_sequential_node_attempts (that many
    consecutive faulted attempts with no successful item in between).
    Any successful item resets sequential_restarts while the node is not
    stopped.

Execution generations:
    Each fault starts a new generation. Node faults raised by items
    dispatched before the fault are not counted again.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from stalwart.contracts.enums import FailureKind, FatalReason, ItemState, NodeState
from stalwart.contracts.events import (
    ItemExhausted,
    ItemSkipped,
    NodeFatal,
    NodeRestarted,
    RetryScheduled,
    TelemetryEvent,
)
from stalwart.engine.delay import compute_delay
from stalwart.engine.scope import NodeStrategyBinding
from stalwart.engine.tracker import AttemptTracker, RestartCounters


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class ItemDecision:
    """Outcome of an item-level input.

    Attributes:
        item_id: The item the decision is about
        state: SUCCEEDED, RETRYING, DEAD_LETTERED or SKIPPED
        attempts: For RETRYING, the retry number (first retry = 1).
            For the terminal states, total executions so far.
        delay: Seconds to wait before re-queueing (RETRYING only)
        event: Telemetry event to emit, if any
    """

    item_id: str
    state: ItemState
    attempts: int
    delay: float = 0.0
    event: TelemetryEvent | None = None


@dataclass(frozen=True, slots=True)
class NodeDecision:
    """Outcome of a node-level input.

    Attributes:
        state: RESTARTING, RUNNING or STOPPED_FATAL
        counters: Restart counters after the transition
        delay: Seconds to wait before re-initialising (RESTARTING only)
        reason: Why the node went fatal (STOPPED_FATAL only)
        event: Telemetry event to emit, if any
    """

    state: NodeState
    counters: RestartCounters
    delay: float = 0.0
    reason: FatalReason | None = None
    detail: str = ""
    event: TelemetryEvent | None = None


class InvalidTransitionError(RuntimeError):
    """Raised when an input is not valid in the node's current state.

    Indicates a bug in the driver, not a pipeline failure.
    """


class SupervisionStateMachine:
    """Item and node state machines for a single supervised node.

    Thread Safety:
        NOT thread-safe. Exactly one thread (the node's driver) may feed
        inputs. This is what keeps the counters single-writer.
    """

    def __init__(
        self,
        binding: NodeStrategyBinding,
        *,
        run_id: str,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._binding = binding
        self._run_id = run_id
        self._clock = clock
        self._tracker = AttemptTracker()
        self._state = NodeState.CREATED
        self._generation = 0

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def node_id(self) -> str:
        return self._binding.node_id

    @property
    def binding(self) -> NodeStrategyBinding:
        return self._binding

    @property
    def state(self) -> NodeState:
        return self._state

    @property
    def generation(self) -> int:
        """Current execution generation (incremented by every fault)."""
        return self._generation

    @property
    def tracker(self) -> AttemptTracker:
        return self._tracker

    @property
    def counters(self) -> RestartCounters:
        return self._tracker.counters()

    @property
    def can_dispatch(self) -> bool:
        """True when new item executions may start."""
        return self._state == NodeState.RUNNING

    # -------------------------------------------------------------------------
    # Node lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._state != NodeState.CREATED:
            raise InvalidTransitionError(f"Node '{self.node_id}' cannot start from state {self._state}")
        self._state = NodeState.RUNNING

    def stop(self) -> bool:
        """Stop the node for pipeline shutdown.

        Returns:
            True if the node transitioned, False if it was already terminal.
        """
        if self._state.is_terminal:
            return False
        self._state = NodeState.STOPPED
        self._tracker.clear_items()
        return True

    # -------------------------------------------------------------------------
    # Item state machine
    # -------------------------------------------------------------------------

    def on_item_success(self, item_id: str) -> ItemDecision:
        """Record a successful execution of ``item_id``.

        Resets the sequential restart counter unless the node is stopped,
        whichever execution generation the item was dispatched in.
        """
        attempts = self._tracker.item_attempts_for(item_id) + 1
        self._tracker.clear_item(item_id)
        if not self._state.is_terminal:
            self._tracker.reset_sequential()
        return ItemDecision(item_id=item_id, state=ItemState.SUCCEEDED, attempts=attempts)

    def on_item_failure(self, item_id: str, kind: FailureKind) -> ItemDecision:
        """Decide between retry and dead-letter for an item-level failure.

        Raises:
            ValueError: If ``kind`` is not an item-level failure kind
            InvalidTransitionError: If the node is already stopped
        """
        if self._state.is_terminal:
            raise InvalidTransitionError(f"Node '{self.node_id}' is stopped; item failures are no longer handled")

        retries = self._tracker.item_attempts_for(item_id)
        if kind == FailureKind.SKIP:
            self._tracker.clear_item(item_id)
            return ItemDecision(
                item_id=item_id,
                state=ItemState.SKIPPED,
                attempts=retries + 1,
                event=ItemSkipped(
                    timestamp=self._clock(),
                    run_id=self._run_id,
                    node_id=self.node_id,
                    item_id=item_id,
                    attempts=retries + 1,
                ),
            )
        if kind == FailureKind.TRANSIENT:
            if retries < self._binding.policy.max_item_retries:
                attempt = self._tracker.record_item_retry(item_id)
                delay = compute_delay(self._binding.strategy, attempt)
                return ItemDecision(
                    item_id=item_id,
                    state=ItemState.RETRYING,
                    attempts=attempt,
                    delay=delay,
                    event=RetryScheduled(
                        timestamp=self._clock(),
                        run_id=self._run_id,
                        node_id=self.node_id,
                        item_id=item_id,
                        attempt=attempt,
                        delay_seconds=delay,
                    ),
                )
            permanent = False
        elif kind == FailureKind.PERMANENT:
            permanent = True
        else:
            raise ValueError(f"on_item_failure() only handles item-level failures, got {kind}")

        attempts = retries + 1
        self._tracker.clear_item(item_id)
        return ItemDecision(
            item_id=item_id,
            state=ItemState.DEAD_LETTERED,
            attempts=attempts,
            event=ItemExhausted(
                timestamp=self._clock(),
                run_id=self._run_id,
                node_id=self.node_id,
                item_id=item_id,
                attempts=attempts,
                permanent=permanent,
            ),
        )

    # -------------------------------------------------------------------------
    # Node state machine
    # -------------------------------------------------------------------------

    def on_node_fault(self, detail: str = "", *, generation: int | None = None) -> NodeDecision | None:
        """Handle a node-level fault.

        Args:
            detail: Description of the fault for diagnostics
            generation: Generation of the item that raised the fault, or None
                for faults reported by the node's own execution loop

        Returns:
            The decision, or None if the fault was ignored because the node
            is not RUNNING or the fault comes from a superseded generation.
        """
        if self._state != NodeState.RUNNING:
            return None
        if generation is not None and generation != self._generation:
            return None
        self._state = NodeState.FAULTED
        return self._escalate(detail)

    def on_restart_failed(self, detail: str = "") -> NodeDecision:
        """Count a failed re-initialisation as another consecutive fault."""
        if self._state != NodeState.RESTARTING:
            raise InvalidTransitionError(f"Node '{self.node_id}' is not restarting (state {self._state})")
        self._state = NodeState.FAULTED
        return self._escalate(detail)

    def on_restart_prerequisites_missing(self, missing: Sequence[str]) -> NodeDecision:
        """Stop the node when a restart cannot be attempted at all.

        Not counted as a restart: nothing was re-initialised.
        """
        if self._state != NodeState.RESTARTING:
            raise InvalidTransitionError(f"Node '{self.node_id}' is not restarting (state {self._state})")
        return self._go_fatal(
            FatalReason.MISSING_PREREQUISITE,
            f"missing restart prerequisites: {', '.join(missing)}",
        )

    def on_restart_complete(self) -> NodeDecision | None:
        """Return the node to RUNNING after a successful re-initialisation.

        Returns:
            The decision carrying NodeRestarted, or None if the node was
            stopped while the restart was pending.
        """
        if self._state.is_terminal:
            return None
        if self._state != NodeState.RESTARTING:
            raise InvalidTransitionError(f"Node '{self.node_id}' is not restarting (state {self._state})")
        self._state = NodeState.RUNNING
        counters = self._tracker.counters()
        return NodeDecision(
            state=NodeState.RUNNING,
            counters=counters,
            event=NodeRestarted(
                timestamp=self._clock(),
                run_id=self._run_id,
                node_id=self.node_id,
                total_restarts=counters.total_restarts,
                sequential_restarts=counters.sequential_restarts,
            ),
        )

    def on_upstream_fatal(self, detail: str = "") -> NodeDecision | None:
        """Stop the node on an explicit fatal signal.

        Returns:
            The fatal decision, or None if the node was already terminal.
        """
        if self._state.is_terminal:
            return None
        return self._go_fatal(FatalReason.UPSTREAM_FATAL, detail)

    def _escalate(self, detail: str) -> NodeDecision:
        counters = self._tracker.record_restart()
        self._generation += 1
        policy = self._binding.policy

        if counters.total_restarts > policy.max_node_restart_attempts:
            return self._go_fatal(FatalReason.RESTART_LIMIT, detail)
        if counters.sequential_restarts >= policy.max_sequential_node_attempts:
            return self._go_fatal(FatalReason.SEQUENTIAL_LIMIT, detail)

        self._state = NodeState.RESTARTING
        return NodeDecision(
            state=NodeState.RESTARTING,
            counters=counters,
            delay=compute_delay(self._binding.strategy, counters.sequential_restarts),
            detail=detail,
        )

    def _go_fatal(self, reason: FatalReason, detail: str) -> NodeDecision:
        self._state = NodeState.STOPPED_FATAL
        self._tracker.clear_items()
        return NodeDecision(
            state=NodeState.STOPPED_FATAL,
            counters=self._tracker.counters(),
            reason=reason,
            detail=detail,
            event=NodeFatal(
                timestamp=self._clock(),
                run_id=self._run_id,
                node_id=self.node_id,
                reason=reason,
                detail=detail,
            ),
        )
