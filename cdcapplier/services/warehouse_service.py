"""
Warehouse sink interface for the CDC change applier

A warehouse holds, per source table, an append-only changelog, a replica
with one row per live primary key, a merge cursor and delete tombstones.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

from ..models.config import TableBinding
from ..models.records import ChangeRecord, ChangelogEntry, ReplicaRow


@dataclass
class MergeResult:
    """Outcome of one committed merge pass"""
    table: str
    cursor: int
    entries: int = 0
    upserted: int = 0
    deleted: int = 0
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return self.entries == 0


def is_stale(winner: ChangelogEntry, stored_token: Optional[int]) -> bool:
    """A winner older than what the replica already reflects must not be applied"""
    return stored_token is not None and stored_token > winner.record.ordering_token


class WarehouseService(ABC):
    """Durable sink for changelog entries, replica rows and merge cursors"""

    @abstractmethod
    def ensure_tables(self, binding: TableBinding) -> None:
        """Create the changelog, replica and bookkeeping tables if missing"""

    @abstractmethod
    def append(self, binding: TableBinding, record: ChangeRecord) -> Optional[ChangelogEntry]:
        """
        Durably append a record to the table's changelog

        Returns:
            The new entry, or None when the record's dedupe key is already stored
        """

    @abstractmethod
    def read_changelog(self, binding: TableBinding, after_seq: int,
                       limit: Optional[int] = None) -> List[ChangelogEntry]:
        """Committed entries with seq > after_seq, in append order"""

    @abstractmethod
    def get_cursor(self, binding: TableBinding) -> int:
        """Current merge cursor, 0 when nothing was merged yet"""

    @abstractmethod
    def get_replica_row(self, binding: TableBinding, primary_key: Dict[str, Any]) -> Optional[ReplicaRow]:
        """Replica state for one primary key"""

    @abstractmethod
    def apply_merge(self, binding: TableBinding, winners: List[ChangelogEntry],
                    expected_cursor: int, new_cursor: int) -> MergeResult:
        """
        Apply winning changes and advance the cursor in one atomic commit

        Raises:
            MergeConflictError: the stored cursor no longer equals expected_cursor
        """

    def close(self) -> None:
        """Release connections"""
