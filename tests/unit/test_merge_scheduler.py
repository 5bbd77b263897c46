"""
Unit tests for MergeScheduler
"""

import threading

import pytest
from unittest.mock import Mock

from cdcapplier.exceptions import ConfigurationError
from cdcapplier.services.merge_scheduler import MergeScheduler, MINIMUM_UPDATE_FREQUENCY_SECONDS


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMergeScheduler:
    """Test merge trigger timing"""

    def test_frequency_validated(self):
        with pytest.raises(ConfigurationError, match="1,000"):
            MergeScheduler(94, Mock())

        assert MergeScheduler(MINIMUM_UPDATE_FREQUENCY_SECONDS, Mock()).update_frequency_secs == 95

    def test_first_trigger_after_one_interval(self):
        clock = FakeClock()
        trigger = Mock(return_value=True)
        scheduler = MergeScheduler(100, trigger, clock=clock)
        scheduler.register("orders")

        clock.now = 99.0
        assert scheduler.fire_due() == []

        clock.now = 100.0
        assert scheduler.fire_due() == ["orders"]
        trigger.assert_called_once_with("orders")

    def test_never_fires_more_often_than_frequency(self):
        """Triggers per table are at least update_frequency_secs apart"""
        clock = FakeClock()
        fired_at = []
        scheduler = MergeScheduler(100, lambda table: fired_at.append(clock.now) or True, clock=clock)
        scheduler.register("orders")

        for step in range(0, 1000, 7):
            clock.now = float(step)
            scheduler.fire_due()

        gaps = [later - earlier for earlier, later in zip(fired_at, fired_at[1:])]
        assert fired_at
        assert all(gap >= 100 for gap in gaps)

    def test_missed_ticks_are_not_queued(self):
        """A long pause yields one trigger, not a burst"""
        clock = FakeClock()
        trigger = Mock(return_value=True)
        scheduler = MergeScheduler(100, trigger, clock=clock)
        scheduler.register("orders")

        clock.now = 1000.0
        scheduler.fire_due()
        scheduler.fire_due()

        assert trigger.call_count == 1
        assert scheduler.last_fired("orders") == 1000.0

    def test_tables_are_independent(self):
        clock = FakeClock()
        trigger = Mock(return_value=True)
        scheduler = MergeScheduler(100, trigger, clock=clock)
        scheduler.register("orders")
        clock.now = 50.0
        scheduler.register("customers")

        clock.now = 100.0
        assert scheduler.fire_due() == ["orders"]
        clock.now = 150.0
        assert scheduler.fire_due() == ["customers"]

    def test_register_is_idempotent(self):
        clock = FakeClock()
        scheduler = MergeScheduler(100, Mock(return_value=True), clock=clock)
        scheduler.register("orders")
        clock.now = 60.0
        scheduler.register("orders")

        assert scheduler.last_fired("orders") == 0.0

    def test_unregister(self):
        clock = FakeClock()
        trigger = Mock(return_value=True)
        scheduler = MergeScheduler(100, trigger, clock=clock)
        scheduler.register("orders")
        scheduler.unregister("orders")

        clock.now = 500.0
        assert scheduler.fire_due() == []
        assert scheduler.tables() == []

    def test_trigger_results_recorded(self):
        clock = FakeClock()
        metrics = Mock()
        results = iter([True, False])
        scheduler = MergeScheduler(100, lambda table: next(results), clock=clock, metrics_service=metrics)
        scheduler.register("orders")

        clock.now = 100.0
        scheduler.fire_due()
        clock.now = 200.0
        scheduler.fire_due()

        recorded = [call[0] for call in metrics.record_trigger.call_args_list]
        assert recorded == [("orders", "fired"), ("orders", "coalesced")]

    def test_failing_trigger_does_not_stop_others(self):
        clock = FakeClock()
        calls = []

        def trigger(table):
            calls.append(table)
            if table == "orders":
                raise RuntimeError("boom")
            return True

        scheduler = MergeScheduler(100, trigger, clock=clock)
        scheduler.register("orders")
        scheduler.register("customers")

        clock.now = 100.0
        scheduler.fire_due()

        assert sorted(calls) == ["customers", "orders"]

    def test_get_stats(self):
        clock = FakeClock()
        scheduler = MergeScheduler(100, Mock(), clock=clock)
        scheduler.register("orders")
        clock.now = 30.0

        stats = scheduler.get_stats()

        assert stats['tables'] == 1
        assert stats['seconds_until_due'] == {"orders": 70.0}

    def test_thread_ticks(self):
        """The background thread fires due tables on its own"""
        clock = FakeClock()
        fired = threading.Event()
        scheduler = MergeScheduler(100, lambda table: fired.set() or True, clock=clock, tick_interval=0.01)
        scheduler.register("orders")
        clock.now = 100.0

        scheduler.start()
        try:
            assert fired.wait(timeout=5.0)
            assert scheduler.is_running()
        finally:
            scheduler.stop()

        assert scheduler.is_running() is False
