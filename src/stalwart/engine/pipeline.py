"""PipelineSupervisor: runs every node of a pipeline under supervision.

Owns the resources the node supervisors share (the retry timer thread) and
turns a fatal fault on any node into cancellation of the whole pipeline.

Lifecycle:
    supervisor = PipelineSupervisor(run_id="run-1", telemetry=telemetry_manager)
    source = supervisor.register(source_node, scope.bind("source"))
    sink = supervisor.register(sink_node, scope.bind("sink"), concurrency=4)
    with supervisor:
        supervisor.start()
        for row_id, row in rows:
            source.submit(row_id, row)
        supervisor.drain(timeout=60.0)

Fatal propagation:
    1. A node's state machine declares it fatal (NodeFatal emitted first)
    2. The external on_fatal callback is invoked with (node_id, fault)
    3. Every other node is stopped and pending timers are cancelled
    4. drain() and submit() raise the FatalPipelineFault
"""

from __future__ import annotations

import threading
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from stalwart.contracts.enums import SupervisionStatus
from stalwart.contracts.events import SupervisionFinished, SupervisionStarted
from stalwart.engine.scheduler import RetryScheduler
from stalwart.engine.supervisor import DEFAULT_BUFFER_SIZE, NodeSupervisor

if TYPE_CHECKING:
    from types import TracebackType

    from stalwart.contracts.errors import FatalPipelineFault
    from stalwart.contracts.events import TelemetryEvent
    from stalwart.contracts.protocols import FatalHandler, OutcomeRouter, SupervisedNode, TelemetrySink
    from stalwart.engine.breaker import CircuitBreakerPolicy
    from stalwart.engine.classification import ErrorClassifier
    from stalwart.engine.scope import NodeStrategyBinding

logger = structlog.get_logger(__name__)


class PipelineSupervisor:
    """Registers, starts, drains and shuts down a pipeline's node supervisors.

    Thread Safety:
        register() and start() are build-time calls for one thread.
        drain(), shutdown() and fatal_fault may be used from any thread;
        shutdown() is safe to call from inside a node's fatal path.
    """

    def __init__(
        self,
        *,
        run_id: str | None = None,
        telemetry: TelemetrySink | None = None,
        outcomes: OutcomeRouter | None = None,
        classifier: ErrorClassifier | None = None,
        on_fatal: FatalHandler | None = None,
        breaker: CircuitBreakerPolicy | None = None,
    ) -> None:
        """Initialize the pipeline supervisor.

        Args:
            run_id: Identifier stamped on telemetry events (generated if None)
            telemetry: Diagnostic event consumer shared by every node
            outcomes: Default outcome router for nodes registered without one
            classifier: Default error classifier for nodes registered without one
            on_fatal: Graph-level callback invoked once for the first fatal node
            breaker: Default circuit breaker policy for nodes registered without one
        """
        self._run_id = run_id if run_id is not None else uuid.uuid4().hex
        self._telemetry = telemetry
        self._outcomes = outcomes
        self._classifier = classifier
        self._on_fatal = on_fatal
        self._breaker = breaker
        self._scheduler = RetryScheduler(name=f"retry-scheduler-{self._run_id[:8]}")
        self._nodes: dict[str, NodeSupervisor] = {}

        self._lock = threading.Lock()
        self._started = False
        self._shut_down = False
        self._fatal: FatalPipelineFault | None = None
        self._start_time: float | None = None

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def nodes(self) -> dict[str, NodeSupervisor]:
        return dict(self._nodes)

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def fatal_fault(self) -> FatalPipelineFault | None:
        """The first fatal fault raised by any node, if one occurred."""
        return self._fatal

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def node(self, node_id: str) -> NodeSupervisor:
        """Look up a registered node supervisor.

        Raises:
            KeyError: If no node with this id is registered
        """
        return self._nodes[node_id]

    def register(
        self,
        node: SupervisedNode,
        binding: NodeStrategyBinding,
        *,
        concurrency: int = 1,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        outcomes: OutcomeRouter | None = None,
        classifier: ErrorClassifier | None = None,
        breaker: CircuitBreakerPolicy | None = None,
    ) -> NodeSupervisor:
        """Add a node under the retry configuration captured in ``binding``.

        Raises:
            RuntimeError: If the pipeline has already started
            ValueError: If a node with the same id is already registered
            MissingRestartPrerequisite: If the node can restart but lacks
                its restart prerequisites
        """
        if self._started or self._shut_down:
            raise RuntimeError("Cannot register nodes after the pipeline has started")
        if binding.node_id in self._nodes:
            raise ValueError(f"Node '{binding.node_id}' is already registered")

        supervisor = NodeSupervisor(
            node,
            binding,
            scheduler=self._scheduler,
            run_id=self._run_id,
            telemetry=self._telemetry,
            outcomes=outcomes if outcomes is not None else self._outcomes,
            classifier=classifier if classifier is not None else self._classifier,
            on_fatal=self._handle_fatal,
            concurrency=concurrency,
            buffer_size=buffer_size,
            breaker=breaker if breaker is not None else self._breaker,
        )
        self._nodes[binding.node_id] = supervisor
        logger.debug(
            "Node registered",
            node_id=binding.node_id,
            concurrency=concurrency,
            buffer_size=buffer_size,
            strategy=binding.strategy.kind.value,
        )
        return supervisor

    def start(self) -> None:
        """Start every registered node.

        Raises:
            RuntimeError: If already started or shut down
        """
        with self._lock:
            if self._started:
                raise RuntimeError("Pipeline supervisor already started")
            if self._shut_down:
                raise RuntimeError("Pipeline supervisor was shut down")
            self._started = True
            self._start_time = time.perf_counter()

        self._emit(SupervisionStarted(timestamp=datetime.now(UTC), run_id=self._run_id, node_count=len(self._nodes)))
        for supervisor in self._nodes.values():
            supervisor.start()
        logger.info("Supervision started", run_id=self._run_id, node_count=len(self._nodes))

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until no node holds any item.

        Items routed from one node into another while waiting are picked up:
        the wait only ends after a full pass finds every node idle.

        Returns:
            True when drained, False if the timeout elapsed first.

        Raises:
            FatalPipelineFault: If any node went fatal
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if (fault := self._first_fatal()) is not None:
                raise fault
            all_idle = True
            for supervisor in list(self._nodes.values()):
                if supervisor.is_idle:
                    continue
                all_idle = False
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not supervisor.wait_idle(timeout=remaining):
                    return False
            if all_idle:
                break
        if (fault := self._first_fatal()) is not None:
            raise fault
        return True

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel pending timers and stop every node. Idempotent.

        No restart or retry happens after this returns. Executions already
        running on worker threads finish in the background; their outcomes
        are discarded.
        """
        self._shutdown(SupervisionStatus.CANCELLED if self._fatal is None else SupervisionStatus.FATAL, timeout)

    def __enter__(self) -> PipelineSupervisor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is None and self._fatal is None:
            self._shutdown(SupervisionStatus.COMPLETED)
        else:
            self.shutdown()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _shutdown(self, status: SupervisionStatus, timeout: float = 5.0) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

        # Timers first so nothing re-queues into a node being stopped
        cancelled = self._scheduler.cancel_all()
        for supervisor in self._nodes.values():
            supervisor.stop()
        for supervisor in self._nodes.values():
            supervisor.join(timeout=timeout)
        self._scheduler.close(timeout=timeout)

        duration_ms = 0.0
        if self._start_time is not None:
            duration_ms = (time.perf_counter() - self._start_time) * 1000
        if self._started:
            self._emit(
                SupervisionFinished(
                    timestamp=datetime.now(UTC),
                    run_id=self._run_id,
                    status=status,
                    duration_ms=duration_ms,
                )
            )
        logger.info(
            "Supervision finished",
            run_id=self._run_id,
            status=status.value,
            duration_ms=round(duration_ms, 2),
            timers_cancelled=cancelled,
        )

    def _first_fatal(self) -> FatalPipelineFault | None:
        # A node records its fault before the pipeline callback runs
        if self._fatal is not None:
            return self._fatal
        for supervisor in self._nodes.values():
            if supervisor.fatal_fault is not None:
                return supervisor.fatal_fault
        return None

    def _handle_fatal(self, node_id: str, fault: FatalPipelineFault) -> None:
        """Called on the fatal node's driver thread."""
        with self._lock:
            first = self._fatal is None
            if first:
                self._fatal = fault
        if not first:
            return

        if self._on_fatal is not None:
            try:
                self._on_fatal(node_id, fault)
            except Exception as e:
                logger.error("Pipeline fatal handler failed", node_id=node_id, error=str(e))

        logger.error("Pipeline cancelled after fatal node fault", node_id=node_id, reason=fault.reason)
        self._shutdown(SupervisionStatus.FATAL)

    def _emit(self, event: TelemetryEvent) -> None:
        if self._telemetry is not None:
            self._telemetry.handle_event(event)
