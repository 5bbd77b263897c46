"""
Unit tests for TableBranch and BranchSupervisor
"""

import threading

import pytest
from unittest.mock import Mock

from cdcapplier.exceptions import SinkError, RecordError, BranchFailedError
from cdcapplier.services.branch_supervisor import BranchSupervisor, BranchStatus
from cdcapplier.services.message_bus import MessageBus, MessageType
from cdcapplier.services.warehouse_service import MergeResult


@pytest.fixture
def message_bus():
    return MessageBus()


@pytest.fixture
def supervisor(config, warehouse, message_bus):
    supervisor = BranchSupervisor(config, warehouse, message_bus)
    yield supervisor
    supervisor.stop_all()


class TestBranchSupervisor:
    """Test branch lifecycle"""

    def test_branch_created_lazily(self, supervisor):
        created = Mock()
        supervisor.on_branch_created = created

        assert supervisor.tables() == []
        branch = supervisor.get_or_create_branch("orders")

        assert supervisor.get_or_create_branch("orders") is branch
        assert branch.status is BranchStatus.RUNNING
        assert branch.binding.qualified_changelog_table == "cdc_changelog.orders_changelog"
        created.assert_called_once_with("orders")

    def test_colliding_warehouse_name_fails_new_table(self, supervisor, warehouse, record_factory):
        """Tables whose names sanitize alike never share warehouse tables"""
        created = Mock()
        supervisor.on_branch_created = created
        first = supervisor.get_or_create_branch("orders_x")

        second = supervisor.get_or_create_branch("orders-x")

        assert first.status is BranchStatus.RUNNING
        assert second.status is BranchStatus.FAILED
        assert "orders_x" in second.failure
        created.assert_called_once_with("orders_x")
        with pytest.raises(BranchFailedError):
            supervisor.dispatch(record_factory(table="orders-x"))
        assert supervisor.failed_tables() == ["orders-x"]

    def test_dispatch_appends(self, supervisor, warehouse, record_factory, wait_until):
        supervisor.dispatch(record_factory(table="orders", key=1, token=10))
        supervisor.dispatch(record_factory(table="customers", key=1, token=3))

        branch = supervisor.get_branch("orders")
        assert branch.appender.flush(timeout=5.0)
        assert supervisor.get_branch("customers").appender.flush(timeout=5.0)

        assert sorted(supervisor.tables()) == ["customers", "orders"]
        assert len(warehouse.changelog(branch.binding)) == 1

    def test_request_merge_coalesces(self, supervisor, wait_until):
        """At most one pending merge per table"""
        branch = supervisor.get_or_create_branch("orders")
        release = threading.Event()
        branch.merger = Mock()
        branch.merger.merge.side_effect = lambda binding: release.wait(timeout=5.0) and MergeResult(table="orders", cursor=0)

        try:
            assert supervisor.request_merge("orders") is True
            assert wait_until(lambda: branch.merger.merge.called)
            # One pass is running; the next request stays pending, a third is coalesced
            assert supervisor.request_merge("orders") is True
            assert supervisor.request_merge("orders") is False
        finally:
            release.set()

        assert supervisor.request_merge("unknown") is False

    def test_merge_runs_on_worker(self, supervisor, warehouse, record_factory, wait_until):
        supervisor.dispatch(record_factory(key=1, token=10))
        branch = supervisor.get_branch("orders")
        assert branch.appender.flush(timeout=5.0)

        assert supervisor.request_merge("orders") is True
        assert wait_until(lambda: warehouse.get_cursor(branch.binding) == 1)
        assert wait_until(lambda: branch.get_stats()['merges_completed'] == 1)

    def test_fail_table_isolates_branch(self, supervisor, message_bus, record_factory):
        """A failed table rejects records while other tables continue"""
        failures = Mock()
        message_bus.subscribe(MessageType.BRANCH_FAILED, failures)
        on_failed = Mock()
        supervisor.on_branch_failed = on_failed
        supervisor.get_or_create_branch("orders")

        supervisor.fail_table("orders", "malformed record")

        with pytest.raises(BranchFailedError):
            supervisor.dispatch(record_factory(table="orders"))
        supervisor.dispatch(record_factory(table="customers"))

        assert supervisor.failed_tables() == ["orders"]
        assert supervisor.request_merge("orders") is False
        on_failed.assert_called_once_with("orders", "malformed record")
        message_bus.process_messages(timeout=0.1)
        assert failures.call_args[0][0].target == "orders"

    def test_fail_is_idempotent(self, supervisor):
        on_failed = Mock()
        supervisor.on_branch_failed = on_failed
        branch = supervisor.get_or_create_branch("orders")

        branch.fail("first")
        branch.fail("second")

        assert branch.failure == "first"
        on_failed.assert_called_once()

    def test_ensure_tables_failure_fails_branch(self, config, message_bus):
        sink = Mock()
        sink.ensure_tables.side_effect = SinkError("unreachable")
        created = Mock()
        supervisor = BranchSupervisor(config, sink, message_bus, on_branch_created=created)

        branch = supervisor.get_or_create_branch("orders")

        assert branch.status is BranchStatus.FAILED
        assert "unreachable" in branch.failure
        created.assert_not_called()
        supervisor.stop_all()

    def test_merge_retry_exhausted_keeps_branch(self, supervisor, fast_retry):
        """Exhausted merge retries wait for the next trigger"""
        branch = supervisor.get_or_create_branch("orders")
        branch.merger = Mock()
        branch.merger.merge.side_effect = SinkError("unavailable")

        branch.run_merge()

        assert branch.status is BranchStatus.RUNNING
        assert branch.get_stats()['merges_retry_exhausted'] == 1

    def test_merge_permanent_error_fails_branch(self, supervisor):
        branch = supervisor.get_or_create_branch("orders")
        branch.merger = Mock()
        branch.merger.merge.side_effect = RecordError("bad row")

        branch.run_merge()

        assert branch.status is BranchStatus.FAILED
        assert "RecordError" in branch.failure

    def test_stop_all(self, supervisor, warehouse, record_factory):
        """Stopping drains queued records and refuses new tables"""
        for token in range(1, 6):
            supervisor.dispatch(record_factory(key=token, token=token))

        supervisor.stop_all()

        branch = supervisor.get_branch("orders")
        assert branch.status is BranchStatus.STOPPED
        assert len(warehouse.changelog(branch.binding)) == 5
        with pytest.raises(BranchFailedError, match="stopping"):
            supervisor.get_or_create_branch("customers")

    def test_get_all_stats(self, supervisor):
        supervisor.get_or_create_branch("orders")

        stats = supervisor.get_all_stats()

        assert stats["orders"]["status"] == "running"
        assert "appender" in stats["orders"]
