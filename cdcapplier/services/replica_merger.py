"""
Replica merger for the CDC change applier
Folds the unmerged changelog tail into the replica with last-writer-wins semantics
"""

import time
from typing import Dict, List, Iterable, Optional

import structlog

from ..models.config import TableBinding
from ..models.records import ChangelogEntry
from ..utils.retry import RetryConfig, call_with_retry
from .warehouse_service import WarehouseService, MergeResult


def select_winners(entries: Iterable[ChangelogEntry]) -> List[ChangelogEntry]:
    """
    Pick the winning entry for every primary key

    The winner has the highest ordering token; ties fall back to arrival
    timestamp, message id and finally append sequence number. Winners are
    returned in append order.
    """
    winners: Dict[str, ChangelogEntry] = {}
    for entry in entries:
        current = winners.get(entry.key)
        if current is None or entry.sort_key() > current.sort_key():
            winners[entry.key] = entry
    return sorted(winners.values(), key=lambda entry: entry.seq)


class ReplicaMerger:
    """Runs merge passes for table bindings against a warehouse"""

    def __init__(self, warehouse: WarehouseService, retry_config: RetryConfig,
                 batch_size: Optional[int] = None, metrics_service=None):
        self.warehouse = warehouse
        self.retry_config = retry_config
        self.batch_size = batch_size
        self.metrics_service = metrics_service
        self.logger = structlog.get_logger()

    def merge(self, binding: TableBinding) -> MergeResult:
        """
        Run one merge pass, committing at most once

        Transient errors, a moved cursor included, re-read the tail and try
        again. Once retries are exhausted the error propagates and the stored
        cursor is left where it was.
        """
        start_time = time.time()

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            self.logger.warning("Merge pass failed, retrying",
                                table=binding.table,
                                attempt=attempt,
                                delay=round(delay, 3),
                                error=str(error))

        result = call_with_retry(self._merge_once, self.retry_config, on_retry, binding)
        duration = time.time() - start_time

        if result.is_empty:
            self.logger.debug("Merge pass found no new changelog entries",
                              table=binding.table, cursor=result.cursor)
            status = 'empty'
        else:
            self.logger.info("Merge pass committed",
                             table=binding.table,
                             cursor=result.cursor,
                             entries=result.entries,
                             upserted=result.upserted,
                             deleted=result.deleted,
                             skipped=result.skipped,
                             duration=round(duration, 3))
            status = 'committed'

        if self.metrics_service:
            self.metrics_service.record_merge(
                binding.table, status, duration=duration,
                upserted=result.upserted, deleted=result.deleted,
                skipped=result.skipped, cursor=result.cursor)
        return result

    def _merge_once(self, binding: TableBinding) -> MergeResult:
        cursor = self.warehouse.get_cursor(binding)
        entries = self.warehouse.read_changelog(binding, cursor, self.batch_size)
        if not entries:
            return MergeResult(table=binding.table, cursor=cursor)

        winners = select_winners(entries)
        new_cursor = max(entry.seq for entry in entries)

        result = self.warehouse.apply_merge(binding, winners, cursor, new_cursor)
        # Every entry in the batch was considered, not just the winners
        result.entries = len(entries)
        return result
