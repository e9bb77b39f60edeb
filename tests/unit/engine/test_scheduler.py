# tests/unit/engine/test_scheduler.py
"""Tests for the shared retry timer thread."""

import threading
import time

import pytest

from stalwart.engine.scheduler import RetryScheduler


class TestSchedule:
    def test_callback_fires_after_delay(self, scheduler: RetryScheduler) -> None:
        fired = threading.Event()
        start = time.monotonic()

        scheduler.schedule(0.05, fired.set)

        assert fired.wait(timeout=2.0)
        assert time.monotonic() - start >= 0.045

    def test_callbacks_fire_in_deadline_order(self, scheduler: RetryScheduler) -> None:
        order: list[str] = []
        done = threading.Event()

        def record(label: str) -> None:
            order.append(label)
            if len(order) == 3:
                done.set()

        scheduler.schedule(0.06, lambda: record("late"))
        scheduler.schedule(0.0, lambda: record("now"))
        scheduler.schedule(0.03, lambda: record("soon"))

        assert done.wait(timeout=2.0)
        assert order == ["now", "soon", "late"]

    def test_negative_delay_rejected(self, scheduler: RetryScheduler) -> None:
        with pytest.raises(ValueError, match="delay must be >= 0"):
            scheduler.schedule(-1.0, lambda: None)

    def test_failing_callback_does_not_stop_thread(self, scheduler: RetryScheduler) -> None:
        fired = threading.Event()

        def broken() -> None:
            raise RuntimeError("callback bug")

        scheduler.schedule(0.0, broken)
        scheduler.schedule(0.01, fired.set)

        assert fired.wait(timeout=2.0)


class TestCancel:
    def test_cancelled_timer_never_fires(self, scheduler: RetryScheduler) -> None:
        fired = threading.Event()
        handle = scheduler.schedule(0.05, fired.set)

        scheduler.cancel(handle)

        assert not fired.wait(timeout=0.2)
        assert scheduler.pending == 0

    def test_cancel_all_returns_pending_count(self, scheduler: RetryScheduler) -> None:
        fired = threading.Event()
        for _ in range(3):
            scheduler.schedule(10.0, fired.set)

        assert scheduler.pending == 3
        assert scheduler.cancel_all() == 3
        assert scheduler.pending == 0
        assert not fired.wait(timeout=0.05)


class TestClose:
    def test_close_is_idempotent(self) -> None:
        scheduler = RetryScheduler()
        scheduler.schedule(10.0, lambda: None)

        scheduler.close()
        scheduler.close()

        assert scheduler.closed
        assert scheduler.pending == 0

    def test_schedule_after_close_rejected(self) -> None:
        scheduler = RetryScheduler()
        scheduler.close()

        with pytest.raises(RuntimeError, match="closed"):
            scheduler.schedule(0.0, lambda: None)

    def test_close_from_callback_does_not_deadlock(self) -> None:
        scheduler = RetryScheduler()
        closed = threading.Event()

        def close_self() -> None:
            scheduler.close()
            closed.set()

        scheduler.schedule(0.0, close_self)

        assert closed.wait(timeout=2.0)
