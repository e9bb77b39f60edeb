"""NodeSupervisor: runs one node under the retry and restart state machines.

Threads per node:
- Driver thread: the only thread that touches the SupervisionStateMachine and
  therefore the only writer of the node's counters. It consumes a control
  queue of messages (submissions, execution outcomes, timer expiries, fault
  reports) and decides what to dispatch next.
- Worker pool: ThreadPoolExecutor sized to the node's concurrency limit.
  Workers only call node.process() and post the outcome back to the driver.

Waiting for a retry delay never occupies a worker: the item parks a timer on
the pipeline's shared RetryScheduler, which posts a RetryDue message back to
the control queue when it fires.

Backpressure:
    submit() blocks while the node already holds ``buffer_size`` items
    (pending, executing or waiting for a retry). While the node is
    restarting nothing is dispatched, so the buffer fills and upstream
    producers block until the node is RUNNING again or goes fatal.

    The optional circuit breaker pauses dispatch the same way while its
    circuit is open.
"""

from __future__ import annotations

import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from stalwart.contracts.enums import CircuitState, FailureKind, ItemState, NodeState
from stalwart.contracts.errors import ExecutionError, FatalPipelineFault, MissingRestartPrerequisite, PipelineCancelled
from stalwart.contracts.protocols import NullOutcomeRouter, RestartPrerequisites
from stalwart.engine.breaker import CircuitBreaker
from stalwart.engine.classification import DefaultErrorClassifier, ErrorClassifier
from stalwart.engine.state_machine import NodeDecision, SupervisionStateMachine

if TYPE_CHECKING:
    from stalwart.contracts.events import TelemetryEvent
    from stalwart.contracts.protocols import FatalHandler, OutcomeRouter, SupervisedNode, TelemetrySink
    from stalwart.engine.breaker import CircuitBreakerPolicy
    from stalwart.engine.scheduler import RetryScheduler, ScheduledCallback
    from stalwart.engine.scope import NodeStrategyBinding
    from stalwart.engine.tracker import RestartCounters

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 64


@dataclass
class WorkItem:
    """An item held by a node supervisor until it reaches a terminal state."""

    item_id: str
    payload: Any
    state: ItemState = ItemState.PENDING


# =============================================================================
# Control messages (consumed by the driver thread only)
# =============================================================================


@dataclass(frozen=True, slots=True)
class _Submitted:
    item: WorkItem


@dataclass(frozen=True, slots=True)
class _Completed:
    item: WorkItem
    result: Any


@dataclass(frozen=True, slots=True)
class _Failed:
    item: WorkItem
    generation: int
    error: BaseException


@dataclass(frozen=True, slots=True)
class _RetryDue:
    item: WorkItem


@dataclass(frozen=True, slots=True)
class _FaultReported:
    error: Exception


@dataclass(frozen=True, slots=True)
class _RestartDue:
    pass


@dataclass(frozen=True, slots=True)
class _BreakerHalfOpen:
    pass


@dataclass(frozen=True, slots=True)
class _Stop:
    pass


def _execution_error(error: BaseException, kind: FailureKind | None = None) -> ExecutionError:
    payload: ExecutionError = {"exception": str(error), "type": type(error).__name__}
    if kind is not None:
        payload["kind"] = kind.value
    return payload


class NodeSupervisor:
    """Supervises item retries and restarts for a single node.

    Created by PipelineSupervisor.register(); not usually built directly.

    Example:
        supervisor = NodeSupervisor(node, binding, scheduler=scheduler, run_id="run-1")
        supervisor.start()
        supervisor.submit("row-1", {"id": 1})
        supervisor.wait_idle(timeout=10.0)
        supervisor.stop()
    """

    def __init__(
        self,
        node: SupervisedNode,
        binding: NodeStrategyBinding,
        *,
        scheduler: RetryScheduler,
        run_id: str,
        telemetry: TelemetrySink | None = None,
        outcomes: OutcomeRouter | None = None,
        classifier: ErrorClassifier | None = None,
        on_fatal: FatalHandler | None = None,
        concurrency: int = 1,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        breaker: CircuitBreakerPolicy | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            node: Node whose process()/restart() are driven
            binding: Frozen strategy and policy captured at registration
            scheduler: Shared timer queue for retry, restart and breaker delays
            run_id: Pipeline run id stamped on every telemetry event
            telemetry: Diagnostic event consumer (None disables emission)
            outcomes: Receives succeeded, skipped and dead-lettered items
            classifier: Maps raw failures onto FailureKind
            on_fatal: Called once with (node_id, fault) if the node goes fatal
            concurrency: Maximum items executing at once (must be >= 1)
            buffer_size: Maximum items held before submit() blocks (must be >= concurrency)
            breaker: Circuit breaker policy (None dispatches regardless of failures)

        Raises:
            ValueError: If concurrency or buffer_size is invalid
            MissingRestartPrerequisite: If the policy allows restarts and the
                node reports missing restart prerequisites
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if buffer_size < concurrency:
            raise ValueError(f"buffer_size ({buffer_size}) must be >= concurrency ({concurrency})")
        if binding.policy.max_node_restart_attempts > 0 and isinstance(node, RestartPrerequisites):
            missing = list(node.missing_restart_prerequisites())
            if missing:
                raise MissingRestartPrerequisite(binding.node_id, missing)

        self._node = node
        self._scheduler = scheduler
        self._telemetry = telemetry
        self._outcomes: OutcomeRouter = outcomes if outcomes is not None else NullOutcomeRouter()
        self._classifier: ErrorClassifier = classifier if classifier is not None else DefaultErrorClassifier()
        self._on_fatal = on_fatal
        self._concurrency = concurrency
        self._buffer_size = buffer_size
        self._machine = SupervisionStateMachine(binding, run_id=run_id)
        self._breaker = (
            CircuitBreaker(breaker, node_id=binding.node_id, run_id=run_id) if breaker is not None else None
        )

        # Driver-owned state
        self._control: queue.Queue[Any] = queue.Queue()
        self._ready: deque[WorkItem] = deque()
        self._in_flight = 0
        self._retry_timers: dict[str, ScheduledCallback] = {}
        self._restart_timer: ScheduledCallback | None = None
        self._restart_due = False
        self._breaker_timer: ScheduledCallback | None = None

        # Shared with submitting threads, guarded by _buffer_cond
        self._buffer_cond = threading.Condition()
        self._held_ids: set[str] = set()
        self._closed = False
        self._fatal: FatalPipelineFault | None = None

        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._stop_requested = False

        self._workers = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"node-{binding.node_id}")
        self._driver = threading.Thread(target=self._drive, name=f"supervisor-{binding.node_id}", daemon=True)

    # -------------------------------------------------------------------------
    # Public API (any thread)
    # -------------------------------------------------------------------------

    @property
    def node_id(self) -> str:
        return self._machine.node_id

    @property
    def binding(self) -> NodeStrategyBinding:
        return self._machine.binding

    @property
    def state(self) -> NodeState:
        """Current node state. Approximately consistent when read off-driver."""
        return self._machine.state

    @property
    def counters(self) -> RestartCounters:
        """Restart counters. Approximately consistent when read off-driver."""
        return self._machine.counters

    @property
    def breaker_policy(self) -> CircuitBreakerPolicy | None:
        return self._breaker.policy if self._breaker is not None else None

    @property
    def circuit_state(self) -> CircuitState | None:
        """Breaker state, or None when the node has no circuit breaker."""
        return self._breaker.state if self._breaker is not None else None

    @property
    def fatal_fault(self) -> FatalPipelineFault | None:
        return self._fatal

    @property
    def held_items(self) -> int:
        """Items accepted and not yet succeeded or dead-lettered."""
        with self._buffer_cond:
            return len(self._held_ids)

    @property
    def is_idle(self) -> bool:
        with self._buffer_cond:
            return self._closed or not self._held_ids

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._started:
                raise RuntimeError(f"Node supervisor '{self.node_id}' already started")
            if self._stop_requested:
                raise RuntimeError(f"Node supervisor '{self.node_id}' was stopped before starting")
            self._started = True
        self._driver.start()

    def submit(self, item_id: str, payload: Any = None, *, timeout: float | None = None) -> bool:
        """Hand an item to the node, blocking while the buffer is full.

        Args:
            item_id: Identity of the item; must be unique among held items
            payload: Data passed to node.process()
            timeout: Maximum seconds to wait for buffer space (None waits forever)

        Returns:
            True if accepted, False if the timeout elapsed first.

        Raises:
            ValueError: If an item with the same id is already held
            FatalPipelineFault: If the node went fatal
            PipelineCancelled: If the node was stopped by pipeline shutdown
        """
        with self._buffer_cond:
            has_room = self._buffer_cond.wait_for(
                lambda: self._closed or len(self._held_ids) < self._buffer_size,
                timeout=timeout,
            )
            if self._closed:
                if self._fatal is not None:
                    raise self._fatal
                raise PipelineCancelled(self.node_id)
            if not has_room:
                return False
            if item_id in self._held_ids:
                raise ValueError(f"Item '{item_id}' is already held by node '{self.node_id}'")
            self._held_ids.add(item_id)
        self._control.put(_Submitted(WorkItem(item_id=item_id, payload=payload)))
        return True

    def report_fault(self, error: Exception) -> None:
        """Report a node-level fault raised outside item processing.

        Used by nodes whose internal execution loop (e.g., a source's reader)
        aborts. Safe to call from any thread.
        """
        self._control.put(_FaultReported(error))

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until the node holds no items or is stopped.

        Returns:
            True if idle (or stopped), False if the timeout elapsed.
        """
        with self._buffer_cond:
            return self._buffer_cond.wait_for(lambda: self._closed or not self._held_ids, timeout=timeout)

    def stop(self) -> None:
        """Stop the node. Idempotent.

        Pending retry timers are cancelled, no further restarts happen, and
        queued items are abandoned. Items already executing run to
        completion but their outcomes are discarded.
        """
        with self._lifecycle_lock:
            if self._stop_requested:
                return
            self._stop_requested = True
            started = self._started
        if started:
            self._control.put(_Stop())
        else:
            # No driver thread exists yet, so this thread may own the machine
            self._shutdown_node()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the driver thread to exit."""
        if self._started and threading.current_thread() is not self._driver:
            self._driver.join(timeout=timeout)

    # -------------------------------------------------------------------------
    # Driver thread
    # -------------------------------------------------------------------------

    def _drive(self) -> None:
        self._machine.start()
        log = logger.bind(node_id=self.node_id)
        log.debug("Node supervisor started", concurrency=self._concurrency)

        while True:
            message = self._control.get()
            if isinstance(message, _Stop):
                self._shutdown_node()
                break
            self._handle(message)
            if self._machine.state.is_terminal:
                break
            self._maybe_restart()
            self._dispatch()

        log.debug("Node supervisor exited", state=self._machine.state.value)

    def _handle(self, message: Any) -> None:
        match message:
            case _Submitted(item=item):
                self._ready.append(item)
            case _Completed(item=item, result=result):
                self._in_flight -= 1
                self._on_success(item, result)
            case _Failed(item=item, generation=generation, error=error):
                self._in_flight -= 1
                self._on_failure(item, generation, error)
            case _RetryDue(item=item):
                self._retry_timers.pop(item.item_id, None)
                item.state = ItemState.PENDING
                self._ready.append(item)
            case _FaultReported(error=error):
                self._apply(self._machine.on_node_fault(str(error)), error)
            case _RestartDue():
                self._restart_timer = None
                self._restart_due = True
            case _BreakerHalfOpen():
                self._breaker_timer = None
                if self._breaker is not None and self._breaker.half_open():
                    logger.info("Circuit half-open, dispatching a trial item", node_id=self.node_id)
            case _:
                raise TypeError(f"Unknown control message: {type(message).__name__}")

    def _dispatch(self) -> None:
        while self._machine.can_dispatch and self._ready and self._in_flight < self._concurrency:
            if self._breaker is not None:
                if not self._breaker.allows_dispatch():
                    return
                self._breaker.on_dispatch()
            item = self._ready.popleft()
            item.state = ItemState.EXECUTING
            self._in_flight += 1
            self._workers.submit(self._execute, item, self._machine.generation)

    def _execute(self, item: WorkItem, generation: int) -> None:
        """Worker thread: run one attempt and post the outcome to the driver."""
        try:
            result = self._node.process(item.item_id, item.payload)
        except Exception as e:
            self._control.put(_Failed(item, generation, e))
        except BaseException as e:
            # Every attempt posts exactly one outcome to the driver
            self._control.put(_Failed(item, generation, e))
            raise
        else:
            self._control.put(_Completed(item, result))

    def _on_success(self, item: WorkItem, result: Any) -> None:
        decision = self._machine.on_item_success(item.item_id)
        item.state = decision.state
        if self._breaker is not None:
            closed = self._breaker.record_success()
            if closed is not None:
                logger.info("Circuit closed", node_id=self.node_id)
                self._emit(closed)
        try:
            self._outcomes.item_succeeded(self.node_id, item.item_id, result)
        except Exception as e:
            self._apply(self._machine.on_upstream_fatal(f"Outcome router failed: {e}"), e)
            return
        self._release(item.item_id)

    def _on_failure(self, item: WorkItem, generation: int, error: BaseException) -> None:
        try:
            kind = self._classifier.classify(error)
        except Exception as e:
            logger.error("Error classifier failed, treating as permanent", node_id=self.node_id, error=str(e))
            kind = FailureKind.PERMANENT

        if kind in (FailureKind.TRANSIENT, FailureKind.PERMANENT):
            self._record_breaker_failure()
            if self._machine.state.is_terminal:
                return
        elif self._breaker is not None:
            self._breaker.release_trial()

        if kind == FailureKind.NODE:
            # The item keeps its retry budget and runs again after the restart
            item.state = ItemState.PENDING
            self._ready.appendleft(item)
            self._apply(self._machine.on_node_fault(str(error), generation=generation), error)
            return
        if kind == FailureKind.FATAL:
            self._apply(self._machine.on_upstream_fatal(str(error)), error)
            return

        decision = self._machine.on_item_failure(item.item_id, kind)
        item.state = decision.state
        self._emit(decision.event)

        if decision.state == ItemState.RETRYING:
            logger.debug(
                "Item retry scheduled",
                node_id=self.node_id,
                item_id=item.item_id,
                attempt=decision.attempts,
                delay_seconds=decision.delay,
                error=str(error),
            )
            handle = self._schedule(decision.delay, _RetryDue(item), label=f"{self.node_id}/{item.item_id}")
            if handle is not None:
                self._retry_timers[item.item_id] = handle
            return

        try:
            if decision.state == ItemState.SKIPPED:
                logger.info("Item skipped", node_id=self.node_id, item_id=item.item_id, error=str(error))
                self._outcomes.item_skipped(self.node_id, item.item_id, item.payload, _execution_error(error, kind))
            else:
                logger.warning(
                    "Item dead-lettered",
                    node_id=self.node_id,
                    item_id=item.item_id,
                    attempts=decision.attempts,
                    kind=kind.value,
                    error=str(error),
                )
                self._outcomes.item_dead_lettered(
                    self.node_id, item.item_id, item.payload, _execution_error(error, kind), decision.attempts
                )
        except Exception as e:
            self._apply(self._machine.on_upstream_fatal(f"Outcome router failed: {e}"), e)
            return
        self._release(item.item_id)

    def _record_breaker_failure(self) -> None:
        if self._breaker is None:
            return
        opened = self._breaker.record_failure()
        if opened is None:
            return
        logger.warning(
            "Circuit opened, dispatch paused",
            node_id=self.node_id,
            consecutive_failures=opened.consecutive_failures,
            open_seconds=opened.open_seconds,
        )
        self._emit(opened)
        self._breaker_timer = self._schedule(opened.open_seconds, _BreakerHalfOpen(), label=f"{self.node_id}/circuit")

    def _maybe_restart(self) -> None:
        """Re-initialise the node once the backoff elapsed and executions drained."""
        if not self._restart_due or self._in_flight > 0:
            return
        self._restart_due = False
        missing = self._missing_restart_prerequisites()
        if missing:
            logger.error("Node restart prerequisites missing", node_id=self.node_id, missing=missing)
            self._apply(self._machine.on_restart_prerequisites_missing(missing), None)
            return
        try:
            self._node.restart()
        except Exception as e:
            logger.warning("Node restart failed", node_id=self.node_id, error=str(e))
            self._apply(self._machine.on_restart_failed(str(e)), e)
            return
        self._apply(self._machine.on_restart_complete(), None)

    def _missing_restart_prerequisites(self) -> list[str]:
        if not isinstance(self._node, RestartPrerequisites):
            return []
        try:
            return list(self._node.missing_restart_prerequisites())
        except Exception as e:
            return [f"prerequisite check failed: {e}"]

    def _schedule(self, delay: float, message: Any, *, label: str) -> ScheduledCallback | None:
        """Park ``message`` on the shared scheduler.

        Returns:
            The timer handle, or None if the scheduler was already closed by
            pipeline shutdown. The node is stopped in that case since no
            timer can ever fire for it again.
        """
        try:
            return self._scheduler.schedule(delay, lambda: self._control.put(message), label=label)
        except RuntimeError as e:
            logger.warning("Scheduler closed, stopping node", node_id=self.node_id, label=label, error=str(e))
            self._shutdown_node()
            return None

    def _apply(self, decision: NodeDecision | None, error: BaseException | None) -> None:
        if decision is None:
            logger.debug(
                "Node fault ignored",
                node_id=self.node_id,
                state=self._machine.state.value,
                error=str(error) if error is not None else None,
            )
            return

        match decision.state:
            case NodeState.RESTARTING:
                logger.warning(
                    "Node faulted, restart scheduled",
                    node_id=self.node_id,
                    total_restarts=decision.counters.total_restarts,
                    sequential_restarts=decision.counters.sequential_restarts,
                    delay_seconds=decision.delay,
                    error=decision.detail,
                )
                self._restart_timer = self._schedule(decision.delay, _RestartDue(), label=f"{self.node_id}/restart")
            case NodeState.RUNNING:
                self._emit(decision.event)
                logger.info(
                    "Node restarted",
                    node_id=self.node_id,
                    total_restarts=decision.counters.total_restarts,
                    sequential_restarts=decision.counters.sequential_restarts,
                )
            case NodeState.STOPPED_FATAL:
                self._emit(decision.event)
                reason = decision.reason.value if decision.reason is not None else "unknown"
                logger.error(
                    "Node declared fatal",
                    node_id=self.node_id,
                    reason=reason,
                    total_restarts=decision.counters.total_restarts,
                    sequential_restarts=decision.counters.sequential_restarts,
                    error=decision.detail,
                )
                fault = FatalPipelineFault(
                    f"Node '{self.node_id}' stopped ({reason}): {decision.detail}",
                    node_id=self.node_id,
                    reason=reason,
                )
                if error is not None:
                    fault.__cause__ = error
                self._fatal = fault
                self._shutdown_node()
                if self._on_fatal is not None:
                    try:
                        self._on_fatal(self.node_id, fault)
                    except Exception as e:
                        logger.error("Fatal handler failed", node_id=self.node_id, error=str(e))
            case _:
                raise TypeError(f"Unexpected node decision state: {decision.state}")

    def _shutdown_node(self) -> None:
        """Cancel timers, abandon held items and release blocked submitters."""
        self._machine.stop()
        for handle in self._retry_timers.values():
            self._scheduler.cancel(handle)
        self._retry_timers.clear()
        if self._restart_timer is not None:
            self._scheduler.cancel(self._restart_timer)
            self._restart_timer = None
        if self._breaker_timer is not None:
            self._scheduler.cancel(self._breaker_timer)
            self._breaker_timer = None
        self._restart_due = False
        abandoned = len(self._ready)
        self._ready.clear()
        self._workers.shutdown(wait=False, cancel_futures=True)

        with self._buffer_cond:
            self._closed = True
            self._held_ids.clear()
            self._buffer_cond.notify_all()

        if abandoned:
            logger.info("Queued items abandoned", node_id=self.node_id, abandoned=abandoned)

    def _release(self, item_id: str) -> None:
        with self._buffer_cond:
            self._held_ids.discard(item_id)
            self._buffer_cond.notify_all()

    def _emit(self, event: TelemetryEvent | None) -> None:
        """Hand an event to the telemetry sink. Never blocks."""
        if event is not None and self._telemetry is not None:
            self._telemetry.handle_event(event)
