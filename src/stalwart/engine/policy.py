"""RetryPolicy: the three limits governing item retries and node restarts.

- max_item_retries: after the original attempt, an item may be retried this
  many additional times before it is dead-lettered.
- max_node_restart_attempts: total restarts a node may perform over its whole
  lifetime.
- max_sequential_node_attempts: consecutive faulted attempts tolerated with no
  successful item in between. Reaching it means the node is crash-looping,
  even if the lifetime total still has room.

Policies are frozen once built. Validation happens at construction so a bad
policy fails while the pipeline is being assembled, never at run time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stalwart.contracts.errors import InvalidPolicyConfig

if TYPE_CHECKING:
    from stalwart.core.config import RetryPolicySettings


def _validate_limit(field: str, value: Any) -> None:
    # bool is an int subclass; True is not a retry limit
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPolicyConfig(field, value, f"must be an int, got {type(value).__name__}")
    if value < 0:
        raise InvalidPolicyConfig(field, value, "must be >= 0")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry and restart limits for a node.

    Note: max_item_retries counts retries, not attempts. max_item_retries=3
    means: try, retry, retry, retry (4 executions in total).
    """

    max_item_retries: int = 0
    max_node_restart_attempts: int = 3
    max_sequential_node_attempts: int = 5

    def __post_init__(self) -> None:
        _validate_limit("max_item_retries", self.max_item_retries)
        _validate_limit("max_node_restart_attempts", self.max_node_restart_attempts)
        _validate_limit("max_sequential_node_attempts", self.max_sequential_node_attempts)

    @property
    def max_item_attempts(self) -> int:
        """Total executions an item gets before it is dead-lettered."""
        return self.max_item_retries + 1

    @classmethod
    def default(cls) -> RetryPolicy:
        """Factory for the default policy: no item retries, bounded restarts."""
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Factory for a policy that never retries items or restarts nodes."""
        return cls(max_item_retries=0, max_node_restart_attempts=0, max_sequential_node_attempts=0)

    @classmethod
    def from_settings(cls, settings: RetryPolicySettings) -> RetryPolicy:
        """Factory from RetryPolicySettings config model.

        Field Mapping (all direct):
            settings.max_item_retries -> max_item_retries
            settings.max_node_restart_attempts -> max_node_restart_attempts
            settings.max_sequential_node_attempts -> max_sequential_node_attempts
        """
        return cls(
            max_item_retries=settings.max_item_retries,
            max_node_restart_attempts=settings.max_node_restart_attempts,
            max_sequential_node_attempts=settings.max_sequential_node_attempts,
        )
