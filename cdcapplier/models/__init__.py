"""
Data models for the CDC change applier
"""

from .config import (
    ApplierConfig,
    WarehouseConfig,
    MonitoringConfig,
    TableBinding,
    RunDescriptor,
    MINIMUM_UPDATE_FREQUENCY_SECONDS,
    MAX_MERGES_PER_TABLE_PER_DAY
)
from .records import (
    OperationKind,
    ChangeRecord,
    ChangelogEntry,
    ReplicaRow,
    canonical_key
)

__all__ = [
    'ApplierConfig',
    'WarehouseConfig',
    'MonitoringConfig',
    'TableBinding',
    'RunDescriptor',
    'MINIMUM_UPDATE_FREQUENCY_SECONDS',
    'MAX_MERGES_PER_TABLE_PER_DAY',
    'OperationKind',
    'ChangeRecord',
    'ChangelogEntry',
    'ReplicaRow',
    'canonical_key'
]
