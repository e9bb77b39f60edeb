"""Shared contracts for the resilient execution subsystem.

This is a leaf package: it imports nothing else from stalwart, so engine,
telemetry and graph code can all depend on it without cycles.
"""

from stalwart.contracts.enums import (
    CircuitState,
    DelayKind,
    FailureKind,
    FatalReason,
    ItemState,
    NodeState,
    SupervisionStatus,
    TelemetryGranularity,
)
from stalwart.contracts.errors import (
    ExecutionError,
    FatalPipelineFault,
    InvalidPolicyConfig,
    InvalidStrategyConfig,
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
    SupervisionFinished,
    SupervisionStarted,
    TelemetryEvent,
)
from stalwart.contracts.protocols import (
    FatalHandler,
    NullOutcomeRouter,
    OutcomeRouter,
    RestartPrerequisites,
    SupervisedNode,
    TelemetrySink,
)

__all__ = [
    "CircuitClosed",
    "CircuitOpened",
    "CircuitState",
    "DelayKind",
    "ExecutionError",
    "FailureKind",
    "FatalHandler",
    "FatalPipelineFault",
    "FatalReason",
    "InvalidPolicyConfig",
    "InvalidStrategyConfig",
    "ItemExhausted",
    "ItemSkipped",
    "ItemState",
    "MissingRestartPrerequisite",
    "NodeFatal",
    "NodeFault",
    "NodeRestarted",
    "NodeState",
    "NullOutcomeRouter",
    "OutcomeRouter",
    "PermanentItemFailure",
    "PipelineCancelled",
    "RestartPrerequisites",
    "RetryScheduled",
    "SkipItem",
    "SupervisedNode",
    "SupervisionFinished",
    "SupervisionStarted",
    "SupervisionStatus",
    "TelemetryEvent",
    "TelemetryGranularity",
    "TelemetrySink",
    "TransientItemFailure",
]
