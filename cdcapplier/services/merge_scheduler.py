"""
Merge scheduler for the CDC change applier
Fires per-table merge triggers no more often than the configured frequency
"""

import threading
import time
from typing import Dict, Any, Optional, Callable, List

import structlog

from ..models.config import (
    MINIMUM_UPDATE_FREQUENCY_SECONDS,
    MAX_MERGES_PER_TABLE_PER_DAY,
    validate_update_frequency
)

__all__ = [
    'MergeScheduler',
    'MINIMUM_UPDATE_FREQUENCY_SECONDS',
    'MAX_MERGES_PER_TABLE_PER_DAY',
]


class MergeScheduler:
    """
    Passive timer driving merge triggers for every registered table

    The only state is the time each table last fired. A tick that finds a
    table overdue fires it once and restarts its interval from now, so
    missed ticks never queue up into a burst of merges.
    """

    def __init__(self, update_frequency_secs: int, trigger: Callable[[str], bool],
                 clock: Callable[[], float] = time.monotonic,
                 tick_interval: float = 1.0, metrics_service=None):
        self.update_frequency_secs = validate_update_frequency(update_frequency_secs)
        self.trigger = trigger
        self.clock = clock
        self.tick_interval = tick_interval
        self.metrics_service = metrics_service

        self.logger = structlog.get_logger()

        self._last_fired: Dict[str, float] = {}
        self._lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, table: str) -> None:
        """Start the table's interval; its first merge fires one interval from now"""
        with self._lock:
            if table in self._last_fired:
                return
            self._last_fired[table] = self.clock()

        self.logger.info("Table registered for merges",
                         table=table, update_frequency_secs=self.update_frequency_secs)

    def unregister(self, table: str) -> None:
        with self._lock:
            self._last_fired.pop(table, None)

    def tables(self) -> List[str]:
        with self._lock:
            return list(self._last_fired)

    def last_fired(self, table: str) -> Optional[float]:
        with self._lock:
            return self._last_fired.get(table)

    def fire_due(self, now: Optional[float] = None) -> List[str]:
        """Trigger every table whose interval elapsed; returns the tables fired"""
        if now is None:
            now = self.clock()

        with self._lock:
            due = [table for table, last in self._last_fired.items()
                   if now - last >= self.update_frequency_secs]
            for table in due:
                self._last_fired[table] = now

        for table in due:
            try:
                accepted = self.trigger(table)
            except Exception as e:
                self.logger.error("Merge trigger failed", table=table, error=str(e))
                accepted = None

            if accepted is None:
                result = 'rejected'
            elif accepted:
                result = 'fired'
            else:
                result = 'coalesced'
                self.logger.debug("Merge already pending, trigger coalesced", table=table)
            if self.metrics_service:
                self.metrics_service.record_trigger(table, result)

        return due

    def start(self) -> None:
        """Start the scheduler thread"""
        if self._thread and self._thread.is_alive():
            self.logger.warning("Merge scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="merge_scheduler")
        self._thread.daemon = True
        self._thread.start()

        self.logger.info("Merge scheduler started",
                         update_frequency_secs=self.update_frequency_secs,
                         tick_interval=self.tick_interval)

    def stop(self) -> None:
        """Stop the scheduler thread"""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                self.logger.warning("Merge scheduler did not stop gracefully")
        self.logger.info("Merge scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_stats(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock:
            next_due = {table: max(0.0, last + self.update_frequency_secs - now)
                        for table, last in self._last_fired.items()}
        return {
            'update_frequency_secs': self.update_frequency_secs,
            'tables': len(next_due),
            'seconds_until_due': next_due,
            'is_running': self.is_running(),
        }

    def _run(self) -> None:
        while not self._stop_event.wait(self.tick_interval):
            self.fire_due()
