# tests/unit/engine/test_supervisor.py
"""Tests for NodeSupervisor: threads, timers, backpressure and escalation.

Nodes are scripted test doubles; delays are kept at zero or a few
milliseconds so the real timer thread can be used.
"""

from __future__ import annotations

import threading
from typing import Any

import pytest

from stalwart.contracts.enums import CircuitState, FatalReason, NodeState
from stalwart.contracts.errors import (
    FatalPipelineFault,
    MissingRestartPrerequisite,
    NodeFault,
    PermanentItemFailure,
    PipelineCancelled,
    SkipItem,
    TransientItemFailure,
)
from stalwart.contracts.events import (
    CircuitClosed,
    CircuitOpened,
    ItemExhausted,
    ItemSkipped,
    NodeFatal,
    NodeRestarted,
    RetryScheduled,
)
from stalwart.engine.breaker import CircuitBreakerPolicy
from stalwart.engine.classification import DefaultErrorClassifier
from stalwart.engine.delay import FixedDelay
from stalwart.engine.policy import RetryPolicy
from stalwart.engine.scheduler import RetryScheduler
from stalwart.engine.scope import NodeStrategyBinding
from stalwart.engine.supervisor import NodeSupervisor
from stalwart.engine.tracker import RestartCounters
from tests.fixtures.nodes import EventCollector, PrerequisiteNode, RecordingRouter, ScriptedNode, wait_until


class AbortItem(BaseException):
    """Stands in for KeyboardInterrupt-style exceptions outside the Exception tree."""


class FatalRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, FatalPipelineFault]] = []

    def __call__(self, node_id: str, fault: FatalPipelineFault) -> None:
        self.calls.append((node_id, fault))


def _supervisor(
    node: ScriptedNode,
    scheduler: RetryScheduler,
    *,
    policy: RetryPolicy | None = None,
    delay: float = 0.0,
    router: RecordingRouter | None = None,
    events: EventCollector | None = None,
    on_fatal: FatalRecorder | None = None,
    **kwargs: Any,
) -> NodeSupervisor:
    binding = NodeStrategyBinding(
        node_id="enrich",
        strategy=FixedDelay(delay=delay),
        policy=policy if policy is not None else RetryPolicy(),
    )
    return NodeSupervisor(
        node,
        binding,
        scheduler=scheduler,
        run_id="run-1",
        telemetry=events,
        outcomes=router,
        on_fatal=on_fatal,
        **kwargs,
    )


class TestItemOutcomes:
    def test_success_routed(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [{"enriched": True}]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, router=router)
        supervisor.start()

        assert supervisor.submit("row-1", {"id": 1})
        assert supervisor.wait_idle(timeout=5.0)

        assert router.succeeded == {"row-1": {"enriched": True}}
        assert supervisor.state == NodeState.RUNNING
        supervisor.stop()

    def test_transient_failure_retried_then_succeeds(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [TransientItemFailure("timeout"), "ok"]})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=2), delay=0.01, router=router, events=events)
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        assert router.succeeded == {"row-1": "ok"}
        assert node.calls_for("row-1") == 2
        retries = events.of_type(RetryScheduled)
        assert [(e.item_id, e.attempt, e.delay_seconds) for e in retries] == [("row-1", 1, 0.01)]
        supervisor.stop()

    def test_dead_lettered_after_retries_plus_one_attempts(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [TransientItemFailure("timeout")] * 10})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=3), router=router, events=events)
        supervisor.start()

        supervisor.submit("row-1", {"id": 1})
        assert supervisor.wait_idle(timeout=5.0)

        assert node.calls_for("row-1") == 4
        error, attempts = router.dead_lettered["row-1"]
        assert attempts == 4
        assert error["type"] == "TransientItemFailure"
        assert error["kind"] == "transient"
        exhausted = events.of_type(ItemExhausted)
        assert len(exhausted) == 1
        assert exhausted[0].attempts == 4
        supervisor.stop()

    def test_permanent_failure_not_retried(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [PermanentItemFailure("malformed")]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=5), router=router)
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        assert node.calls_for("row-1") == 1
        assert router.dead_lettered["row-1"][1] == 1
        supervisor.stop()

    def test_unclassified_error_dead_lettered(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [KeyError("missing")]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=5), router=router)
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        error, attempts = router.dead_lettered["row-1"]
        assert error["type"] == "KeyError"
        assert attempts == 1
        supervisor.stop()

    def test_custom_classifier(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [TimeoutError("slow"), "ok"]})
        router = RecordingRouter()
        supervisor = _supervisor(
            node,
            scheduler,
            policy=RetryPolicy(max_item_retries=1),
            router=router,
            classifier=DefaultErrorClassifier(transient=(TimeoutError,)),
        )
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        assert router.succeeded == {"row-1": "ok"}
        supervisor.stop()

    def test_skip_routed_without_dead_letter(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [SkipItem("filtered out")]})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=3), router=router, events=events)
        supervisor.start()

        supervisor.submit("row-1", {"id": 1})
        assert supervisor.wait_idle(timeout=5.0)

        assert node.calls_for("row-1") == 1
        assert router.dead_lettered == {}
        assert router.skipped["row-1"]["type"] == "SkipItem"
        assert router.skipped["row-1"]["kind"] == "skip"
        assert [(e.item_id, e.attempts) for e in events.of_type(ItemSkipped)] == [("row-1", 1)]
        assert events.of_type(ItemExhausted) == []
        supervisor.stop()

    def test_base_exception_from_process_still_settles_item(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [AbortItem("interrupted")]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, router=router)
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        error, attempts = router.dead_lettered["row-1"]
        assert error["type"] == "AbortItem"
        assert attempts == 1

        supervisor.submit("row-2", "ok")
        assert supervisor.wait_idle(timeout=5.0)
        assert router.succeeded == {"row-2": "ok"}
        supervisor.stop()

    def test_sibling_items_not_blocked_by_retry_wait(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"slow": [TransientItemFailure("wait")]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=1), delay=10.0, router=router)
        supervisor.start()

        supervisor.submit("slow", None)
        supervisor.submit("fast", "done")

        assert wait_until(lambda: "fast" in router.succeeded)
        assert "slow" not in router.succeeded
        supervisor.stop()


class TestNodeRestart:
    def test_node_fault_restarts_and_requeues_item(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [NodeFault("connection lost"), "ok"]})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=0), router=router, events=events)
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        assert node.restarts == 1
        assert router.succeeded == {"row-1": "ok"}
        assert supervisor.counters == RestartCounters(total_restarts=1, sequential_restarts=0)
        restarted = events.of_type(NodeRestarted)
        assert [(e.total_restarts, e.sequential_restarts) for e in restarted] == [(1, 1)]
        supervisor.stop()

    def test_consecutive_faults_go_fatal(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [NodeFault("crash")] * 10})
        events = EventCollector()
        on_fatal = FatalRecorder()
        supervisor = _supervisor(
            node,
            scheduler,
            policy=RetryPolicy(max_sequential_node_attempts=5, max_node_restart_attempts=10),
            events=events,
            on_fatal=on_fatal,
        )
        supervisor.start()

        supervisor.submit("row-1", None)

        assert wait_until(lambda: len(on_fatal.calls) == 1)
        assert supervisor.state == NodeState.STOPPED_FATAL
        assert node.restarts == 4
        assert supervisor.counters.total_restarts == 5
        node_id, fault = on_fatal.calls[0]
        assert node_id == "enrich"
        assert fault.reason == FatalReason.SEQUENTIAL_LIMIT.value
        assert isinstance(fault.__cause__, NodeFault)

        fatal_events = events.of_type(NodeFatal)
        assert len(fatal_events) == 1
        assert events.events[-1] == fatal_events[0]

    def test_submit_after_fatal_raises_fault(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [NodeFault("crash")]})
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy.no_retry())
        supervisor.start()
        supervisor.submit("row-1", None)

        assert wait_until(lambda: supervisor.state == NodeState.STOPPED_FATAL)
        assert supervisor.wait_idle(timeout=5.0)

        with pytest.raises(FatalPipelineFault) as exc_info:
            supervisor.submit("row-2", None)
        assert exc_info.value.node_id == "enrich"
        assert supervisor.fatal_fault is exc_info.value

    def test_restart_failure_counts_as_fault(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [NodeFault("crash"), "ok"]}, restart_failures=[RuntimeError("init failed")])
        router = RecordingRouter()
        supervisor = _supervisor(
            node,
            scheduler,
            policy=RetryPolicy(max_sequential_node_attempts=5, max_node_restart_attempts=10),
            router=router,
        )
        supervisor.start()

        supervisor.submit("row-1", None)
        assert supervisor.wait_idle(timeout=5.0)

        assert node.restart_attempts == 2
        assert node.restarts == 1
        assert supervisor.counters.total_restarts == 2
        assert router.succeeded == {"row-1": "ok"}
        supervisor.stop()

    def test_reported_fault_triggers_restart(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode()
        events = EventCollector()
        supervisor = _supervisor(node, scheduler, events=events)
        supervisor.start()

        supervisor.report_fault(NodeFault("reader aborted"))

        assert wait_until(lambda: node.restarts == 1)
        assert wait_until(lambda: len(events.of_type(NodeRestarted)) == 1)
        assert supervisor.state == NodeState.RUNNING
        supervisor.stop()

    def test_item_raising_fatal_stops_node(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [FatalPipelineFault("sink unreachable")]})
        on_fatal = FatalRecorder()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=3), on_fatal=on_fatal)
        supervisor.start()

        supervisor.submit("row-1", None)

        assert wait_until(lambda: len(on_fatal.calls) == 1)
        assert on_fatal.calls[0][1].reason == FatalReason.UPSTREAM_FATAL.value

    def test_router_failure_stops_node(self, scheduler: RetryScheduler) -> None:
        class BrokenRouter(RecordingRouter):
            def item_succeeded(self, node_id: str, item_id: str, result: Any) -> None:
                raise RuntimeError("downstream closed")

        on_fatal = FatalRecorder()
        supervisor = _supervisor(ScriptedNode(), scheduler, router=BrokenRouter(), on_fatal=on_fatal)
        supervisor.start()

        supervisor.submit("row-1", None)

        assert wait_until(lambda: len(on_fatal.calls) == 1)
        assert "downstream closed" in str(on_fatal.calls[0][1])


class TestBackpressureAndConcurrency:
    def test_submit_blocks_when_buffer_full(self, scheduler: RetryScheduler) -> None:
        gate = threading.Event()
        node = ScriptedNode(gate=gate)
        supervisor = _supervisor(node, scheduler, concurrency=1, buffer_size=1)
        supervisor.start()

        assert supervisor.submit("row-1", None)
        assert supervisor.submit("row-2", None, timeout=0.05) is False

        gate.set()
        assert supervisor.submit("row-2", None, timeout=5.0)
        assert supervisor.wait_idle(timeout=5.0)
        supervisor.stop()

    def test_items_run_concurrently_up_to_limit(self, scheduler: RetryScheduler) -> None:
        gate = threading.Event()
        node = ScriptedNode(gate=gate)
        supervisor = _supervisor(node, scheduler, concurrency=3, buffer_size=10)
        supervisor.start()

        for i in range(6):
            supervisor.submit(f"row-{i}", None)

        assert wait_until(lambda: node.max_concurrent == 3)
        gate.set()
        assert supervisor.wait_idle(timeout=5.0)
        assert node.max_concurrent == 3
        supervisor.stop()

    def test_duplicate_item_id_rejected(self, scheduler: RetryScheduler) -> None:
        gate = threading.Event()
        supervisor = _supervisor(ScriptedNode(gate=gate), scheduler, buffer_size=4)
        supervisor.start()
        supervisor.submit("row-1", None)

        with pytest.raises(ValueError, match="already held"):
            supervisor.submit("row-1", None)

        gate.set()
        supervisor.stop()

    def test_invalid_sizes_rejected(self, scheduler: RetryScheduler) -> None:
        with pytest.raises(ValueError, match="concurrency"):
            _supervisor(ScriptedNode(), scheduler, concurrency=0)
        with pytest.raises(ValueError, match="buffer_size"):
            _supervisor(ScriptedNode(), scheduler, concurrency=4, buffer_size=2)


class TestStop:
    def test_stop_cancels_retry_timers(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [TransientItemFailure("later")]})
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=1), delay=30.0)
        supervisor.start()
        supervisor.submit("row-1", None)
        assert wait_until(lambda: scheduler.pending == 1)

        supervisor.stop()
        supervisor.join(timeout=5.0)

        assert scheduler.pending == 0
        assert supervisor.state == NodeState.STOPPED
        assert supervisor.is_idle

    def test_stop_is_idempotent(self, scheduler: RetryScheduler) -> None:
        supervisor = _supervisor(ScriptedNode(), scheduler)
        supervisor.start()

        supervisor.stop()
        supervisor.stop()
        supervisor.join(timeout=5.0)

        assert supervisor.state == NodeState.STOPPED

    def test_submit_after_stop_cancelled(self, scheduler: RetryScheduler) -> None:
        supervisor = _supervisor(ScriptedNode(), scheduler)
        supervisor.start()
        supervisor.stop()
        supervisor.join(timeout=5.0)

        with pytest.raises(PipelineCancelled):
            supervisor.submit("row-1", None)

    def test_stop_before_start(self, scheduler: RetryScheduler) -> None:
        supervisor = _supervisor(ScriptedNode(), scheduler)

        supervisor.stop()

        assert supervisor.state == NodeState.STOPPED
        with pytest.raises(RuntimeError, match="stopped before starting"):
            supervisor.start()

    def test_retry_after_scheduler_closed_stops_node(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [TransientItemFailure("timeout")]})
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_item_retries=3), delay=0.01)
        supervisor.start()
        scheduler.close()

        supervisor.submit("row-1", None)

        assert supervisor.wait_idle(timeout=5.0)
        supervisor.join(timeout=5.0)
        assert supervisor.state == NodeState.STOPPED
        with pytest.raises(PipelineCancelled):
            supervisor.submit("row-2", None)

    def test_restart_after_scheduler_closed_stops_node(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"row-1": [NodeFault("crash")]})
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_node_restart_attempts=3))
        supervisor.start()
        scheduler.close()

        supervisor.submit("row-1", None)

        assert supervisor.wait_idle(timeout=5.0)
        supervisor.join(timeout=5.0)
        assert supervisor.state == NodeState.STOPPED
        assert node.restart_attempts == 0


class TestCircuitBreaker:
    def test_opens_after_consecutive_failures_and_pauses_dispatch(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({f"bad-{i}": [PermanentItemFailure("api down")] for i in range(3)})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(
            node,
            scheduler,
            router=router,
            events=events,
            breaker=CircuitBreakerPolicy(failure_threshold=3, open_seconds=30.0),
        )
        supervisor.start()

        for i in range(3):
            supervisor.submit(f"bad-{i}", None)
        assert wait_until(lambda: len(router.dead_lettered) == 3)
        supervisor.submit("row-1", "ok")

        assert supervisor.circuit_state == CircuitState.OPEN
        assert supervisor.wait_idle(timeout=0.2) is False
        assert node.calls_for("row-1") == 0
        opened = events.of_type(CircuitOpened)
        assert [(e.consecutive_failures, e.open_seconds) for e in opened] == [(3, 30.0)]

        supervisor.stop()
        supervisor.join(timeout=5.0)
        assert scheduler.pending == 0

    def test_half_open_trial_success_closes_circuit(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"bad": [PermanentItemFailure("api down")]})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(
            node,
            scheduler,
            router=router,
            events=events,
            breaker=CircuitBreakerPolicy(failure_threshold=1, open_seconds=0.05),
        )
        supervisor.start()

        supervisor.submit("bad", None)
        assert wait_until(lambda: "bad" in router.dead_lettered)
        supervisor.submit("row-1", "ok")
        supervisor.submit("row-2", "ok")

        assert supervisor.wait_idle(timeout=5.0)
        assert router.succeeded == {"row-1": "ok", "row-2": "ok"}
        assert supervisor.circuit_state == CircuitState.CLOSED
        assert len(events.of_type(CircuitOpened)) == 1
        assert len(events.of_type(CircuitClosed)) == 1
        supervisor.stop()

    def test_trial_failure_reopens_circuit(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({"bad-1": [PermanentItemFailure("down")], "bad-2": [PermanentItemFailure("still down")]})
        router = RecordingRouter()
        events = EventCollector()
        supervisor = _supervisor(
            node,
            scheduler,
            router=router,
            events=events,
            breaker=CircuitBreakerPolicy(failure_threshold=1, open_seconds=0.05),
        )
        supervisor.start()

        supervisor.submit("bad-1", None)
        assert wait_until(lambda: "bad-1" in router.dead_lettered)
        supervisor.submit("bad-2", None)

        assert wait_until(lambda: len(events.of_type(CircuitOpened)) == 2)
        assert events.of_type(CircuitOpened)[1].consecutive_failures == 2

        supervisor.submit("row-1", "ok")
        assert supervisor.wait_idle(timeout=5.0)
        assert router.succeeded == {"row-1": "ok"}
        assert len(events.of_type(CircuitClosed)) == 1
        supervisor.stop()

    def test_skips_do_not_trip_breaker(self, scheduler: RetryScheduler) -> None:
        node = ScriptedNode({f"row-{i}": [SkipItem("filtered")] for i in range(3)})
        router = RecordingRouter()
        supervisor = _supervisor(
            node,
            scheduler,
            router=router,
            breaker=CircuitBreakerPolicy(failure_threshold=2, open_seconds=30.0),
        )
        supervisor.start()

        for i in range(3):
            supervisor.submit(f"row-{i}", None)

        assert supervisor.wait_idle(timeout=5.0)
        assert sorted(router.skipped) == ["row-0", "row-1", "row-2"]
        assert supervisor.circuit_state == CircuitState.CLOSED
        supervisor.stop()

    def test_no_breaker_by_default(self, scheduler: RetryScheduler) -> None:
        supervisor = _supervisor(ScriptedNode(), scheduler)

        assert supervisor.circuit_state is None
        supervisor.stop()


class TestRestartPrerequisites:
    def test_missing_prerequisites_rejected_at_construction(self, scheduler: RetryScheduler) -> None:
        node = PrerequisiteNode(missing=["materialization buffer"])

        with pytest.raises(MissingRestartPrerequisite) as exc_info:
            _supervisor(node, scheduler, policy=RetryPolicy(max_node_restart_attempts=3))

        assert exc_info.value.node_id == "enrich"
        assert exc_info.value.missing == ("materialization buffer",)

    def test_not_checked_when_restarts_disabled(self, scheduler: RetryScheduler) -> None:
        node = PrerequisiteNode(missing=["materialization buffer"])

        supervisor = _supervisor(node, scheduler, policy=RetryPolicy.no_retry())

        supervisor.stop()
        assert supervisor.state == NodeState.STOPPED

    def test_restart_proceeds_when_prerequisites_present(self, scheduler: RetryScheduler) -> None:
        node = PrerequisiteNode({"row-1": [NodeFault("crash"), "ok"]})
        router = RecordingRouter()
        supervisor = _supervisor(node, scheduler, policy=RetryPolicy(max_node_restart_attempts=3), router=router)
        supervisor.start()

        supervisor.submit("row-1", None)

        assert supervisor.wait_idle(timeout=5.0)
        assert node.restarts == 1
        assert router.succeeded == {"row-1": "ok"}
        supervisor.stop()

    def test_prerequisites_lost_before_restart_go_fatal(self, scheduler: RetryScheduler) -> None:
        node = PrerequisiteNode({"row-1": [NodeFault("crash")]})
        events = EventCollector()
        on_fatal = FatalRecorder()
        supervisor = _supervisor(
            node,
            scheduler,
            policy=RetryPolicy(max_node_restart_attempts=3),
            events=events,
            on_fatal=on_fatal,
        )
        supervisor.start()
        node.missing = ["materialization buffer"]

        supervisor.submit("row-1", None)

        assert wait_until(lambda: len(on_fatal.calls) == 1)
        assert node.restart_attempts == 0
        fault = on_fatal.calls[0][1]
        assert fault.reason == FatalReason.MISSING_PREREQUISITE.value
        assert "materialization buffer" in str(fault)
        assert [e.reason for e in events.of_type(NodeFatal)] == [FatalReason.MISSING_PREREQUISITE]
