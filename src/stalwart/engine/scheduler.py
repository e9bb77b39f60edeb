"""RetryScheduler: one timer thread for every delayed re-queue in a pipeline.

Items waiting for a retry delay (and nodes waiting out a restart backoff)
must not occupy a worker thread. Instead they park a callback here; the
timer thread fires it when the deadline passes. Callbacks are expected to be
cheap hand-offs (putting a message on a node's control queue).

Shutdown Sequence:
    cancel_all() drops every pending timer immediately. close() does the same
    and stops the timer thread. Both are idempotent.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass(order=True)
class ScheduledCallback:
    """Handle for a pending timer. Ordered by deadline, then FIFO."""

    deadline: float
    sequence: int
    callback: Callable[[], None] = field(compare=False)
    label: str = field(default="", compare=False)
    cancelled: bool = field(default=False, compare=False)


class RetryScheduler:
    """Deadline-ordered timer queue served by a single background thread.

    Thread Safety:
        schedule(), cancel(), cancel_all() and close() may be called from any
        thread. Callbacks run on the timer thread, outside the internal lock.

    Example:
        scheduler = RetryScheduler()
        handle = scheduler.schedule(0.5, lambda: control.put(RetryDue(item_id)))
        scheduler.cancel(handle)   # no-op if it already fired
        scheduler.close()
    """

    def __init__(self, *, name: str = "retry-scheduler") -> None:
        self._heap: list[ScheduledCallback] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def pending(self) -> int:
        """Number of timers that have neither fired nor been cancelled."""
        with self._condition:
            return sum(1 for entry in self._heap if not entry.cancelled)

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, delay: float, callback: Callable[[], None], *, label: str = "") -> ScheduledCallback:
        """Run ``callback`` on the timer thread after ``delay`` seconds.

        Raises:
            ValueError: If delay is negative
            RuntimeError: If the scheduler has been closed
        """
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        with self._condition:
            if self._closed:
                raise RuntimeError("RetryScheduler is closed")
            entry = ScheduledCallback(
                deadline=time.monotonic() + delay,
                sequence=next(self._sequence),
                callback=callback,
                label=label,
            )
            heapq.heappush(self._heap, entry)
            self._condition.notify()
        return entry

    def cancel(self, handle: ScheduledCallback) -> None:
        """Cancel a pending timer. Lazy: the entry is discarded when popped."""
        with self._condition:
            handle.cancelled = True

    def cancel_all(self) -> int:
        """Cancel every pending timer.

        Returns:
            Number of timers that were still pending.
        """
        with self._condition:
            cancelled = sum(1 for entry in self._heap if not entry.cancelled)
            for entry in self._heap:
                entry.cancelled = True
            self._heap.clear()
            self._condition.notify()
        if cancelled:
            logger.debug("Retry timers cancelled", cancelled=cancelled)
        return cancelled

    def close(self, timeout: float = 5.0) -> None:
        """Cancel all timers and stop the timer thread."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
        self.cancel_all()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.error("Retry scheduler thread did not exit cleanly within timeout")

    def _run(self) -> None:
        while True:
            with self._condition:
                entry = self._next_due()
                if entry is None:
                    return
            try:
                entry.callback()
            except Exception as e:
                # A broken callback must not kill every other node's timers
                logger.error("Retry timer callback failed", label=entry.label, error=str(e))

    def _next_due(self) -> ScheduledCallback | None:
        """Block until a timer is due. Must be called holding the condition.

        Returns:
            The due entry, or None once the scheduler is closed.
        """
        while not self._closed:
            if not self._heap:
                self._condition.wait()
                continue
            head = self._heap[0]
            if head.cancelled:
                heapq.heappop(self._heap)
                continue
            remaining = head.deadline - time.monotonic()
            if remaining <= 0:
                return heapq.heappop(self._heap)
            self._condition.wait(timeout=remaining)
        return None
