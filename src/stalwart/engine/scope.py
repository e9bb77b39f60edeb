"""Build-time strategy scope and per-node bindings.

While a pipeline is being assembled, configuration calls set "the currently
active" delay strategy and retry policy. Each node captures a frozen
NodeStrategyBinding when it is registered; later configuration calls affect
only nodes registered afterwards.

Example:
    scope = StrategyScope()
    scope.with_retry_policy(RetryPolicy(max_item_retries=3))
    scope.use_fixed(0.5)
    source_binding = scope.bind("source")      # fixed 0.5s

    scope.use_exponential(base=1.0, multiplier=2.0, max_delay=60.0)
    enrich_binding = scope.bind("enrich")      # exponential
    assert source_binding.strategy == FixedDelay(0.5)

Nothing here is consulted at run time: the supervisor only ever sees the
frozen bindings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from stalwart.engine.delay import (
    DelayStrategy,
    ExponentialDelay,
    FixedDelay,
    LinearDelay,
    default_strategy,
    delay_from_settings,
)
from stalwart.engine.policy import RetryPolicy

if TYPE_CHECKING:
    from stalwart.core.config import SupervisionSettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ScopeSnapshot:
    """The active (strategy, policy) pair at one instant."""

    strategy: DelayStrategy
    policy: RetryPolicy

    def bind(self, node_id: str) -> NodeStrategyBinding:
        """Create a binding for ``node_id`` from this snapshot."""
        if not node_id:
            raise ValueError("node_id must be a non-empty string")
        return NodeStrategyBinding(node_id=node_id, strategy=self.strategy, policy=self.policy)


@dataclass(frozen=True, slots=True)
class NodeStrategyBinding:
    """Frozen retry configuration captured for one node at registration time.

    Attributes:
        node_id: The registered node
        strategy: Delay strategy active when the node was added
        policy: Retry policy active when the node was added
    """

    node_id: str
    strategy: DelayStrategy
    policy: RetryPolicy


class StrategyScope:
    """Mutable build-time holder of the active delay strategy and retry policy.

    Thread Safety:
        NOT thread-safe. Pipeline assembly is expected to happen on a single
        thread before any node runs.
    """

    def __init__(
        self,
        *,
        strategy: DelayStrategy | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._strategy: DelayStrategy = strategy if strategy is not None else default_strategy()
        self._policy: RetryPolicy = policy if policy is not None else RetryPolicy.default()
        self._bindings: dict[str, NodeStrategyBinding] = {}

    @classmethod
    def from_settings(cls, settings: SupervisionSettings) -> StrategyScope:
        """Create a scope seeded from validated settings."""
        return cls(
            strategy=delay_from_settings(settings.delay),
            policy=RetryPolicy.from_settings(settings.retry),
        )

    @property
    def strategy(self) -> DelayStrategy:
        return self._strategy

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def bindings(self) -> dict[str, NodeStrategyBinding]:
        """Bindings created so far, keyed by node id."""
        return dict(self._bindings)

    def with_retry_policy(self, policy: RetryPolicy) -> StrategyScope:
        """Bind a retry policy for nodes registered from now on.

        Raises:
            TypeError: If ``policy`` is not a RetryPolicy (validation already
                happened when the RetryPolicy was built)
        """
        if not isinstance(policy, RetryPolicy):
            raise TypeError(f"Expected RetryPolicy, got {type(policy).__name__}")
        self._policy = policy
        return self

    def use_strategy(self, strategy: DelayStrategy) -> StrategyScope:
        """Make ``strategy`` the active delay strategy."""
        if not isinstance(strategy, FixedDelay | LinearDelay | ExponentialDelay):
            raise TypeError(f"Expected a delay strategy, got {type(strategy).__name__}")
        self._strategy = strategy
        return self

    def use_fixed(self, delay: float) -> StrategyScope:
        return self.use_strategy(FixedDelay(delay=delay))

    def use_linear(self, base: float, increment: float, max_delay: float) -> StrategyScope:
        return self.use_strategy(LinearDelay(base=base, increment=increment, max_delay=max_delay))

    def use_exponential(self, base: float, multiplier: float, max_delay: float) -> StrategyScope:
        return self.use_strategy(ExponentialDelay(base=base, multiplier=multiplier, max_delay=max_delay))

    def snapshot(self) -> ScopeSnapshot:
        """Return the currently active strategy and policy. Pure."""
        return ScopeSnapshot(strategy=self._strategy, policy=self._policy)

    def bind(self, node_id: str) -> NodeStrategyBinding:
        """Capture the active configuration for a node being registered.

        Raises:
            ValueError: If ``node_id`` was already bound in this scope
        """
        if node_id in self._bindings:
            raise ValueError(f"Node '{node_id}' already has a strategy binding")
        binding = self.snapshot().bind(node_id)
        self._bindings[node_id] = binding
        logger.debug(
            "Node strategy bound",
            node_id=node_id,
            strategy=binding.strategy.kind.value,
            max_item_retries=binding.policy.max_item_retries,
        )
        return binding
