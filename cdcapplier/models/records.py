"""
Change record models for the CDC change applier
"""

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Tuple

from ..exceptions import RecordError


class OperationKind(Enum):
    """Kinds of row-level changes"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def parse(cls, value: Any) -> 'OperationKind':
        """Parse an operation name or a Debezium op code (c, r, u, d)"""
        if isinstance(value, OperationKind):
            return value
        if not isinstance(value, str) or not value:
            raise RecordError(f"Invalid operation kind: {value!r}")
        code = value.strip().lower()
        if code in ('c', 'r', 'insert', 'create', 'read'):
            return cls.INSERT
        if code in ('u', 'update'):
            return cls.UPDATE
        if code in ('d', 'delete'):
            return cls.DELETE
        raise RecordError(f"Unknown operation kind: {value!r}")


def canonical_key(primary_key: Dict[str, Any]) -> str:
    """Stable string form of a (possibly composite) primary key"""
    return json.dumps(primary_key, sort_keys=True, separators=(',', ':'), default=str)


@dataclass(frozen=True, eq=False)
class ChangeRecord:
    """
    One CDC event for one row of one source table

    Equality is change identity: redeliveries of the same change compare
    equal regardless of arrival metadata. Records define no ordering
    operators; order them explicitly with sort_key().
    """
    table: str
    operation: OperationKind
    primary_key: Dict[str, Any]
    ordering_token: int
    values: Optional[Dict[str, Any]] = None
    arrival_timestamp: Optional[float] = None
    message_id: Optional[str] = None

    def __post_init__(self):
        """Validate record after initialization"""
        if not self.table:
            raise RecordError("Table is required")
        if not isinstance(self.operation, OperationKind):
            object.__setattr__(self, 'operation', OperationKind.parse(self.operation))
        if not self.primary_key or not isinstance(self.primary_key, dict):
            raise RecordError(f"Primary key is required for table '{self.table}'")
        if isinstance(self.ordering_token, bool) or not isinstance(self.ordering_token, int):
            raise RecordError(f"Ordering token must be an integer, got {self.ordering_token!r}")
        if self.values is not None and not isinstance(self.values, dict):
            raise RecordError(f"Values must be a mapping, got {type(self.values).__name__}")
        if self.operation is not OperationKind.DELETE and not self.values:
            raise RecordError(f"Values are required for {self.operation.value} on table '{self.table}'")
        if self.arrival_timestamp is not None and (
                isinstance(self.arrival_timestamp, bool)
                or not isinstance(self.arrival_timestamp, (int, float))):
            raise RecordError(f"Arrival timestamp must be a number, got {self.arrival_timestamp!r}")
        if self.message_id is not None and not isinstance(self.message_id, str):
            raise RecordError(f"Message id must be a string, got {self.message_id!r}")

        if self.arrival_timestamp is None:
            object.__setattr__(self, 'arrival_timestamp', time.time())
        if not self.message_id:
            object.__setattr__(self, 'message_id', uuid.uuid4().hex[:12])

    @property
    def key(self) -> str:
        return canonical_key(self.primary_key)

    def dedupe_key(self) -> Tuple[str, str, int, str]:
        """Identity of a change: redeliveries share it"""
        return (self.table, self.key, self.ordering_token, self.operation.value)

    def sort_key(self) -> Tuple[int, float, str]:
        return (self.ordering_token, self.arrival_timestamp, self.message_id)

    def row_values(self) -> Dict[str, Any]:
        """Column values for the replica row, key columns included"""
        row = dict(self.values or {})
        row.update(self.primary_key)
        return row

    def __eq__(self, other):
        if not isinstance(other, ChangeRecord):
            return NotImplemented
        return self.dedupe_key() == other.dedupe_key()

    def __hash__(self):
        return hash(self.dedupe_key())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'operation': self.operation.value,
            'primary_key': dict(self.primary_key),
            'values': dict(self.values) if self.values is not None else None,
            'ordering_token': self.ordering_token,
            'arrival_timestamp': self.arrival_timestamp,
            'message_id': self.message_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], table: Optional[str] = None) -> 'ChangeRecord':
        """Decode a transport payload into a ChangeRecord"""
        if not isinstance(data, dict):
            raise RecordError(f"Change record payload must be a mapping, got {type(data).__name__}")
        try:
            token = data.get('ordering_token', data.get('token'))
            if isinstance(token, str) and token.strip().lstrip('-').isdigit():
                token = int(token)
            return cls(
                table=data.get('table') or table,
                operation=OperationKind.parse(data.get('operation', data.get('op'))),
                primary_key=data.get('primary_key'),
                ordering_token=token,
                values=data.get('values'),
                arrival_timestamp=data.get('arrival_timestamp'),
                message_id=data.get('message_id'),
            )
        except TypeError as e:
            raise RecordError(f"Invalid change record payload: {e}")


@dataclass(frozen=True)
class ChangelogEntry:
    """A change record persisted with its append sequence number"""
    seq: int
    record: ChangeRecord

    @property
    def key(self) -> str:
        return self.record.key

    def sort_key(self) -> Tuple[int, float, str, int]:
        return self.record.sort_key() + (self.seq,)


@dataclass(frozen=True)
class ReplicaRow:
    """Materialized current state of one primary key"""
    table: str
    primary_key: Dict[str, Any]
    values: Dict[str, Any]
    ordering_token: int

    @property
    def key(self) -> str:
        return canonical_key(self.primary_key)
