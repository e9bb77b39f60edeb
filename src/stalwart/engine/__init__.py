"""Retry supervision engine.

Build time:
    StrategyScope / ScopeSnapshot produce frozen NodeStrategyBinding values
    from the active DelayStrategy and RetryPolicy.

Run time:
    PipelineSupervisor owns one NodeSupervisor per node plus the shared
    RetryScheduler. Each NodeSupervisor drives a SupervisionStateMachine
    and, when configured, a CircuitBreaker.
"""

from stalwart.engine.breaker import CircuitBreaker, CircuitBreakerPolicy
from stalwart.engine.classification import DefaultErrorClassifier, ErrorClassifier
from stalwart.engine.delay import (
    DelayStrategy,
    ExponentialDelay,
    FixedDelay,
    LinearDelay,
    compute_delay,
    default_strategy,
    delay_from_settings,
    exponential,
    fixed,
    linear,
)
from stalwart.engine.pipeline import PipelineSupervisor
from stalwart.engine.policy import RetryPolicy
from stalwart.engine.scheduler import RetryScheduler, ScheduledCallback
from stalwart.engine.scope import NodeStrategyBinding, ScopeSnapshot, StrategyScope
from stalwart.engine.state_machine import (
    InvalidTransitionError,
    ItemDecision,
    NodeDecision,
    SupervisionStateMachine,
)
from stalwart.engine.supervisor import NodeSupervisor, WorkItem
from stalwart.engine.tracker import AttemptTracker, RestartCounters

__all__ = [
    "AttemptTracker",
    "CircuitBreaker",
    "CircuitBreakerPolicy",
    "DefaultErrorClassifier",
    "DelayStrategy",
    "ErrorClassifier",
    "ExponentialDelay",
    "FixedDelay",
    "InvalidTransitionError",
    "ItemDecision",
    "LinearDelay",
    "NodeDecision",
    "NodeStrategyBinding",
    "NodeSupervisor",
    "PipelineSupervisor",
    "RestartCounters",
    "RetryPolicy",
    "RetryScheduler",
    "ScheduledCallback",
    "ScopeSnapshot",
    "StrategyScope",
    "SupervisionStateMachine",
    "WorkItem",
    "compute_delay",
    "default_strategy",
    "delay_from_settings",
    "exponential",
    "fixed",
    "linear",
]
