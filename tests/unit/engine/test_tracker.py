# tests/unit/engine/test_tracker.py
"""Tests for AttemptTracker counters."""

from stalwart.engine.tracker import AttemptTracker, RestartCounters


class TestItemAttempts:
    def test_fresh_item_has_no_attempts(self) -> None:
        assert AttemptTracker().item_attempts_for("row-1") == 0

    def test_record_item_retry_increments_per_item(self) -> None:
        tracker = AttemptTracker()

        assert tracker.record_item_retry("a") == 1
        assert tracker.record_item_retry("a") == 2
        assert tracker.record_item_retry("b") == 1
        assert tracker.item_attempts == {"a": 2, "b": 1}

    def test_clear_item(self) -> None:
        tracker = AttemptTracker()
        tracker.record_item_retry("a")

        tracker.clear_item("a")
        tracker.clear_item("never-seen")

        assert tracker.item_attempts == {}

    def test_clear_items(self) -> None:
        tracker = AttemptTracker()
        tracker.record_item_retry("a")
        tracker.record_item_retry("b")

        tracker.clear_items()

        assert tracker.item_attempts == {}


class TestRestartCounters:
    def test_record_restart_increments_both(self) -> None:
        tracker = AttemptTracker()

        tracker.record_restart()
        counters = tracker.record_restart()

        assert counters == RestartCounters(total_restarts=2, sequential_restarts=2)

    def test_reset_sequential_keeps_total(self) -> None:
        tracker = AttemptTracker()
        tracker.record_restart()
        tracker.record_restart()

        tracker.reset_sequential()

        assert tracker.counters() == RestartCounters(total_restarts=2, sequential_restarts=0)

    def test_restarts_do_not_touch_item_attempts(self) -> None:
        tracker = AttemptTracker()
        tracker.record_item_retry("in-flight")

        tracker.record_restart()

        assert tracker.item_attempts_for("in-flight") == 1
