"""AttemptTracker: per-node failure counters.

Counters are plain data mutated only by the node's state machine, which in
turn is driven by a single thread per node. There is no locking here.

- item_attempts: retries already scheduled per in-flight item (cleared on
  success, skip or dead-letter; survives node restarts)
- total_restarts: lifetime restarts, never reset
- sequential_restarts: consecutive restarts with no successful item in
  between, reset by any successful item while the node is not stopped
"""

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class RestartCounters:
    """Read-only view of a node's restart counters."""

    total_restarts: int
    sequential_restarts: int


@dataclass
class AttemptTracker:
    """Mutable failure counters for one node instance."""

    item_attempts: dict[str, int] = field(default_factory=dict)
    total_restarts: int = 0
    sequential_restarts: int = 0

    def item_attempts_for(self, item_id: str) -> int:
        """Retries already scheduled for ``item_id`` (0 for a fresh item)."""
        return self.item_attempts.get(item_id, 0)

    def record_item_retry(self, item_id: str) -> int:
        """Increment and return the retry count for ``item_id``."""
        attempts = self.item_attempts.get(item_id, 0) + 1
        self.item_attempts[item_id] = attempts
        return attempts

    def clear_item(self, item_id: str) -> None:
        """Forget an item that reached a terminal state."""
        self.item_attempts.pop(item_id, None)

    def clear_items(self) -> None:
        """Forget every in-flight item (node permanently stopped)."""
        self.item_attempts.clear()

    def record_restart(self) -> RestartCounters:
        """Count a node-level fault against both restart counters."""
        self.total_restarts += 1
        self.sequential_restarts += 1
        return self.counters()

    def reset_sequential(self) -> None:
        self.sequential_restarts = 0

    def counters(self) -> RestartCounters:
        return RestartCounters(
            total_restarts=self.total_restarts,
            sequential_restarts=self.sequential_restarts,
        )
