"""
Branch supervisor for the CDC change applier
Spawns and supervises one independent branch per discovered source table
"""

import threading
import time
from enum import Enum
from typing import Dict, Any, Optional, Callable, List

import structlog

from ..exceptions import BranchFailedError, SinkError
from ..models.config import ApplierConfig, TableBinding
from ..models.records import ChangeRecord
from .changelog_appender import ChangelogAppender
from .message_bus import MessageBus
from .replica_merger import ReplicaMerger
from .warehouse_service import WarehouseService


class BranchStatus(Enum):
    """Table branch status enumeration"""
    CREATED = "created"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class TableBranch:
    """Appender thread plus merge worker thread for one table"""

    def __init__(self, binding: TableBinding, warehouse: WarehouseService,
                 merger: ReplicaMerger, config: ApplierConfig,
                 message_bus: MessageBus, metrics_service=None,
                 on_failed: Optional[Callable[[str, str], None]] = None):
        self.binding = binding
        self.warehouse = warehouse
        self.merger = merger
        self.message_bus = message_bus
        self.metrics_service = metrics_service
        self.on_failed = on_failed

        self.logger = structlog.get_logger()

        self.appender = ChangelogAppender(
            binding, warehouse, config.retry,
            metrics_service=metrics_service,
            queue_size=config.queue_size,
            on_fatal=self.fail
        )

        self._status = BranchStatus.CREATED
        self._status_lock = threading.RLock()
        self.failure: Optional[str] = None

        # Set while a merge is pending; a second trigger before it runs is coalesced
        self._merge_requested = threading.Event()
        self._merge_thread: Optional[threading.Thread] = None
        self._shutdown_requested = threading.Event()

        self._stats = {
            'merges_completed': 0,
            'merges_empty': 0,
            'merges_retry_exhausted': 0,
            'last_cursor': None,
            'last_merge_time': None,
        }
        self._stats_lock = threading.Lock()

    @property
    def table(self) -> str:
        return self.binding.table

    @property
    def status(self) -> BranchStatus:
        with self._status_lock:
            return self._status

    def _set_status(self, status: BranchStatus) -> None:
        with self._status_lock:
            self._status = status
        if self.metrics_service:
            self.metrics_service.set_branch_status(self.table, status.value)

    def start(self) -> None:
        """Create the table's sinks and start both worker threads"""
        try:
            self.warehouse.ensure_tables(self.binding)
        except Exception as e:
            self.fail(f"Could not prepare warehouse tables: {e}")
            return

        self.appender.start()

        self._merge_thread = threading.Thread(target=self._run_merges, name=f"merger_{self.table}")
        self._merge_thread.daemon = True
        self._merge_thread.start()

        self._set_status(BranchStatus.RUNNING)
        self.logger.info("Table branch started",
                         table=self.table,
                         changelog_table=self.binding.qualified_changelog_table,
                         replica_table=self.binding.qualified_replica_table)

    def stop(self) -> None:
        """Drain queued records, let an in-flight merge finish, then stop"""
        failed = self.status is BranchStatus.FAILED
        self.appender.stop(drain_timeout=0 if failed else 10.0)

        self._shutdown_requested.set()
        if self._merge_thread and self._merge_thread.is_alive():
            self._merge_thread.join(timeout=30.0)
            if self._merge_thread.is_alive():
                self.logger.warning("Merge worker did not stop gracefully", table=self.table)

        if not failed:
            self._set_status(BranchStatus.STOPPED)
        self.logger.info("Table branch stopped", table=self.table)

    def submit(self, record: ChangeRecord) -> None:
        """Hand a record to the appender; raises BranchFailedError once halted"""
        if self.failure is not None:
            raise BranchFailedError(self.table, self.failure)
        self.appender.submit(record)

    def request_merge(self) -> bool:
        """Ask the merge worker for a pass; False when one is already pending"""
        if self.failure is not None or self._shutdown_requested.is_set():
            return False
        if self._merge_requested.is_set():
            return False
        self._merge_requested.set()
        return True

    def fail(self, reason: str) -> None:
        """Halt the branch; records already appended stay in the changelog"""
        with self._status_lock:
            if self._status is BranchStatus.FAILED:
                return
            self.failure = reason
            self._status = BranchStatus.FAILED
        if self.metrics_service:
            self.metrics_service.set_branch_status(self.table, BranchStatus.FAILED.value)

        self.logger.error("Table branch failed", table=self.table, error=reason)
        self.message_bus.publish_branch_failed(self.table, reason)
        if self.on_failed:
            self.on_failed(self.table, reason)

    def run_merge(self) -> None:
        """One merge pass in the calling thread"""
        start_time = time.time()
        try:
            result = self.merger.merge(self.binding)
        except SinkError as e:
            # Cursor is unchanged, so the next trigger retries the same tail
            with self._stats_lock:
                self._stats['merges_retry_exhausted'] += 1
            if self.metrics_service:
                self.metrics_service.record_merge(self.table, 'retry_exhausted',
                                                  duration=time.time() - start_time)
            self.logger.warning("Merge retries exhausted, waiting for next trigger",
                                table=self.table, error=str(e))
            return
        except Exception as e:
            if self.metrics_service:
                self.metrics_service.record_merge(self.table, 'failed',
                                                  duration=time.time() - start_time)
            self.fail(f"Merge failed: {type(e).__name__}: {e}")
            return

        with self._stats_lock:
            if result.is_empty:
                self._stats['merges_empty'] += 1
            else:
                self._stats['merges_completed'] += 1
            self._stats['last_cursor'] = result.cursor
            self._stats['last_merge_time'] = time.time()

    def _run_merges(self) -> None:
        """Merge worker loop"""
        while not self._shutdown_requested.is_set() and self.failure is None:
            if not self._merge_requested.wait(timeout=0.1):
                continue
            self._merge_requested.clear()
            self.run_merge()
        self.logger.debug("Merge worker finished", table=self.table)

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.copy()
        stats.update({
            'status': self.status.value,
            'failure': self.failure,
            'merge_pending': self._merge_requested.is_set(),
            'appender': self.appender.get_stats(),
        })
        return stats


class BranchSupervisor:
    """Creates table branches lazily and routes work to them"""

    def __init__(self, config: ApplierConfig, warehouse: WarehouseService,
                 message_bus: MessageBus, metrics_service=None,
                 on_branch_created: Optional[Callable[[str], None]] = None,
                 on_branch_failed: Optional[Callable[[str, str], None]] = None):
        self.config = config
        self.warehouse = warehouse
        self.message_bus = message_bus
        self.metrics_service = metrics_service
        self.on_branch_created = on_branch_created
        self.on_branch_failed = on_branch_failed

        self.logger = structlog.get_logger()

        self.merger = ReplicaMerger(
            warehouse, config.retry,
            batch_size=config.merge_batch_size,
            metrics_service=metrics_service
        )

        self._branches: Dict[str, TableBranch] = {}
        self._branches_lock = threading.RLock()
        self._stopping = False

    def get_branch(self, table: str) -> Optional[TableBranch]:
        with self._branches_lock:
            return self._branches.get(table)

    def get_or_create_branch(self, table: str) -> TableBranch:
        """Return the table's branch, starting a new one on first sight"""
        with self._branches_lock:
            branch = self._branches.get(table)
            if branch is not None:
                return branch
            if self._stopping:
                raise BranchFailedError(table, "pipeline is stopping")

            branch = TableBranch(
                self.config.binding_for(table),
                self.warehouse,
                self.merger,
                self.config,
                self.message_bus,
                metrics_service=self.metrics_service,
                on_failed=self.on_branch_failed
            )
            clash = self._colliding_table(branch.binding)
            self._branches[table] = branch
            self.logger.info("New table discovered", table=table, branches=len(self._branches))
            if clash is not None:
                # Both tables would write the same warehouse tables
                branch.fail(f"Table name collides with '{clash}' as "
                            f"warehouse table '{branch.binding.replica_table}'")
            else:
                branch.start()

        if branch.status is BranchStatus.RUNNING and self.on_branch_created:
            self.on_branch_created(table)
        return branch

    def _colliding_table(self, binding) -> Optional[str]:
        for other in self._branches.values():
            if other.binding.replica_table == binding.replica_table:
                return other.table
        return None

    def dispatch(self, record: ChangeRecord) -> None:
        """Route a record to its table's branch"""
        branch = self.get_or_create_branch(record.table)
        branch.submit(record)
        if self.metrics_service:
            self.metrics_service.record_received(record.table, record.operation.value)

    def fail_table(self, table: str, reason: str) -> None:
        self.get_or_create_branch(table).fail(reason)

    def request_merge(self, table: str) -> bool:
        branch = self.get_branch(table)
        if branch is None:
            return False
        return branch.request_merge()

    def tables(self) -> List[str]:
        with self._branches_lock:
            return list(self._branches)

    def failed_tables(self) -> List[str]:
        with self._branches_lock:
            branches = list(self._branches.values())
        return [branch.table for branch in branches if branch.status is BranchStatus.FAILED]

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._branches_lock:
            branches = list(self._branches.values())
        return {branch.table: branch.get_stats() for branch in branches}

    def stop_all(self) -> None:
        """Stop every branch; no new branches are created afterwards"""
        with self._branches_lock:
            self._stopping = True
            branches = list(self._branches.values())

        for branch in branches:
            try:
                branch.stop()
            except Exception as e:
                self.logger.error("Error stopping table branch", table=branch.table, error=str(e))

        self.logger.info("All table branches stopped", branches=len(branches))
