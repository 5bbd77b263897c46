"""
Changelog appender for the CDC change applier
Durably appends one table's change records in arrival order on a dedicated thread
"""

import threading
import time
from queue import Queue, Empty, Full
from typing import Dict, Any, Optional, Callable

import structlog

from ..exceptions import BranchFailedError
from ..models.config import TableBinding
from ..models.records import ChangeRecord, ChangelogEntry
from ..utils.retry import RetryConfig, call_with_retry
from .warehouse_service import WarehouseService


class ChangelogAppender:
    """Single writer for one table's changelog"""

    def __init__(self, binding: TableBinding, warehouse: WarehouseService,
                 retry_config: RetryConfig, metrics_service=None,
                 queue_size: int = 10000,
                 on_fatal: Optional[Callable[[str], None]] = None):
        self.binding = binding
        self.warehouse = warehouse
        self.retry_config = retry_config
        self.metrics_service = metrics_service
        self.on_fatal = on_fatal

        self.logger = structlog.get_logger()

        self._thread: Optional[threading.Thread] = None
        self._shutdown_requested = False
        self._shutdown_lock = threading.Lock()

        self._record_queue: Queue = Queue(maxsize=queue_size)

        # Records submitted but not yet appended or discarded
        self._pending = 0
        self._pending_cond = threading.Condition()

        self.failure: Optional[str] = None

        self._stats = {
            'records_submitted': 0,
            'records_appended': 0,
            'duplicates_skipped': 0,
            'append_retries': 0,
            'last_seq': None,
            'last_append_time': None,
            'is_running': False,
        }
        self._stats_lock = threading.Lock()

    @property
    def table(self) -> str:
        return self.binding.table

    def start(self) -> None:
        """Start the appender thread"""
        if self._thread and self._thread.is_alive():
            self.logger.warning("Changelog appender already running", table=self.table)
            return

        self._thread = threading.Thread(target=self._run, name=f"appender_{self.table}")
        self._thread.daemon = True
        self._thread.start()

        self.logger.info("Changelog appender started", table=self.table)

    def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop the appender after appending what is already queued"""
        if not self.flush(timeout=drain_timeout) and self._record_queue.qsize():
            self.logger.warning("Changelog appender stopped with records still queued",
                                table=self.table,
                                queue_size=self._record_queue.qsize())

        with self._shutdown_lock:
            self._shutdown_requested = True

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                self.logger.warning("Changelog appender did not stop gracefully", table=self.table)

        self.logger.info("Changelog appender stopped", table=self.table)

    def submit(self, record: ChangeRecord) -> None:
        """
        Queue a record for append, blocking while the queue is full

        Raises:
            BranchFailedError: the appender halted on a fatal error or was stopped
        """
        with self._pending_cond:
            self._pending += 1

        while True:
            if self.failure is not None:
                self._done()
                raise BranchFailedError(self.table, self.failure)
            if self._is_shutdown_requested():
                self._done()
                raise BranchFailedError(self.table, "appender stopped")
            try:
                self._record_queue.put(record, timeout=0.5)
                break
            except Full:
                continue

        with self._stats_lock:
            self._stats['records_submitted'] += 1
        if self.metrics_service:
            self.metrics_service.set_queue_size(self.table, self._record_queue.qsize())

    def append_now(self, record: ChangeRecord) -> Optional[ChangelogEntry]:
        """
        Append one record, retrying transient warehouse errors

        Returns:
            The new changelog entry, or None when the record was already stored
        """
        start_time = time.time()

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            with self._stats_lock:
                self._stats['append_retries'] += 1
            if self.metrics_service:
                self.metrics_service.record_append_retry(self.table)
            self.logger.warning("Changelog append failed, retrying",
                                table=self.table,
                                attempt=attempt,
                                delay=round(delay, 3),
                                error=str(error))

        entry = call_with_retry(self.warehouse.append, self.retry_config, on_retry,
                                self.binding, record)

        with self._stats_lock:
            if entry is None:
                self._stats['duplicates_skipped'] += 1
            else:
                self._stats['records_appended'] += 1
                self._stats['last_seq'] = entry.seq
            self._stats['last_append_time'] = time.time()

        if self.metrics_service:
            self.metrics_service.record_append(self.table, entry is not None, time.time() - start_time)

        if entry is None:
            self.logger.debug("Duplicate change record skipped",
                              table=self.table, message_id=record.message_id)
        return entry

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted record is appended; False on timeout or failure"""
        with self._pending_cond:
            completed = self._pending_cond.wait_for(
                lambda: self._pending == 0 or self.failure is not None, timeout=timeout)
        return completed and self.failure is None

    def is_running(self) -> bool:
        with self._stats_lock:
            return self._stats['is_running']

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.copy()
        stats['queue_size'] = self._record_queue.qsize()
        stats['max_queue_size'] = self._record_queue.maxsize
        stats['failure'] = self.failure
        return stats

    def _is_shutdown_requested(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_requested

    def _done(self) -> None:
        with self._pending_cond:
            self._pending -= 1
            self._pending_cond.notify_all()

    def _run(self) -> None:
        """Main thread loop"""
        with self._stats_lock:
            self._stats['is_running'] = True

        try:
            while not self._is_shutdown_requested():
                try:
                    record = self._record_queue.get(timeout=0.1)
                except Empty:
                    continue

                try:
                    self.append_now(record)
                except Exception as e:
                    # Records are never skipped; the branch halts instead
                    self._fail(f"{type(e).__name__}: {e}", record)
                    return
                finally:
                    self._record_queue.task_done()
                    self._done()
        finally:
            with self._stats_lock:
                self._stats['is_running'] = False
            self.logger.info("Changelog appender finished", table=self.table)

    def _fail(self, reason: str, record: ChangeRecord) -> None:
        with self._pending_cond:
            self.failure = reason
            self._pending_cond.notify_all()

        self.logger.error("Changelog append failed permanently, halting branch",
                          table=self.table,
                          message_id=record.message_id,
                          ordering_token=record.ordering_token,
                          error=reason)

        if self.on_fatal:
            self.on_fatal(reason)
