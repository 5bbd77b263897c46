"""
In-memory warehouse backend for local runs and tests
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple
import structlog

from ..exceptions import MergeConflictError
from ..models.config import TableBinding
from ..models.records import ChangeRecord, ChangelogEntry, ReplicaRow, OperationKind, canonical_key
from .warehouse_service import WarehouseService, MergeResult, is_stale


@dataclass
class _TableState:
    changelog: List[ChangelogEntry] = field(default_factory=list)
    dedupe_keys: Dict[Tuple, int] = field(default_factory=dict)
    replica: Dict[str, ReplicaRow] = field(default_factory=dict)
    tombstones: Dict[str, int] = field(default_factory=dict)
    cursor: int = 0
    next_seq: int = 1


class InMemoryWarehouse(WarehouseService):
    """Thread-safe warehouse kept in process memory"""

    def __init__(self):
        self.logger = structlog.get_logger()
        self._tables: Dict[str, _TableState] = {}
        self._lock = threading.RLock()

    def _state(self, binding: TableBinding) -> _TableState:
        with self._lock:
            if binding.table not in self._tables:
                self._tables[binding.table] = _TableState()
            return self._tables[binding.table]

    def ensure_tables(self, binding: TableBinding) -> None:
        self._state(binding)
        self.logger.debug("In-memory tables ready",
                          changelog_table=binding.qualified_changelog_table,
                          replica_table=binding.qualified_replica_table)

    def append(self, binding: TableBinding, record: ChangeRecord) -> Optional[ChangelogEntry]:
        dedupe_key = record.dedupe_key()
        with self._lock:
            state = self._state(binding)
            if dedupe_key in state.dedupe_keys:
                return None

            entry = ChangelogEntry(seq=state.next_seq, record=record)
            state.changelog.append(entry)
            state.dedupe_keys[dedupe_key] = entry.seq
            state.next_seq += 1
            return entry

    def read_changelog(self, binding: TableBinding, after_seq: int,
                       limit: Optional[int] = None) -> List[ChangelogEntry]:
        with self._lock:
            # Sequence numbers are dense, so the tail starts at index after_seq
            tail = self._state(binding).changelog[after_seq:]
            return list(tail[:limit] if limit is not None else tail)

    def get_cursor(self, binding: TableBinding) -> int:
        with self._lock:
            return self._state(binding).cursor

    def get_replica_row(self, binding: TableBinding, primary_key: Dict[str, Any]) -> Optional[ReplicaRow]:
        with self._lock:
            return self._state(binding).replica.get(canonical_key(primary_key))

    def apply_merge(self, binding: TableBinding, winners: List[ChangelogEntry],
                    expected_cursor: int, new_cursor: int) -> MergeResult:
        with self._lock:
            state = self._state(binding)
            if state.cursor != expected_cursor:
                raise MergeConflictError(
                    f"Merge cursor for table '{binding.table}' moved from {expected_cursor} to {state.cursor}")
            if new_cursor < expected_cursor:
                raise ValueError(f"Merge cursor cannot move backwards ({expected_cursor} -> {new_cursor})")

            # Work on copies; state is swapped only once every winner applied
            replica = dict(state.replica)
            tombstones = dict(state.tombstones)
            result = MergeResult(table=binding.table, cursor=new_cursor, entries=len(winners))
            for winner in winners:
                self._apply_winner(binding, winner, replica, tombstones, result)

            state.replica = replica
            state.tombstones = tombstones
            state.cursor = new_cursor
            return result

    def _apply_winner(self, binding: TableBinding, winner: ChangelogEntry,
                      replica: Dict[str, ReplicaRow], tombstones: Dict[str, int],
                      result: MergeResult) -> None:
        key = winner.key
        existing = replica.get(key)
        stored_token = existing.ordering_token if existing else tombstones.get(key)
        if is_stale(winner, stored_token):
            result.skipped += 1
            return

        record = winner.record
        if record.operation is OperationKind.DELETE:
            replica.pop(key, None)
            tombstones[key] = record.ordering_token
            result.deleted += 1
        else:
            replica[key] = ReplicaRow(
                table=binding.table,
                primary_key=dict(record.primary_key),
                values=record.row_values(),
                ordering_token=record.ordering_token
            )
            tombstones.pop(key, None)
            result.upserted += 1

    def changelog(self, binding: TableBinding) -> List[ChangelogEntry]:
        """Full changelog of a table"""
        with self._lock:
            return list(self._state(binding).changelog)

    def replica_rows(self, binding: TableBinding) -> Dict[str, ReplicaRow]:
        """Snapshot of a table's replica keyed by canonical primary key"""
        with self._lock:
            return dict(self._state(binding).replica)
