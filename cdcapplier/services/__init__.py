"""
Services for the CDC change applier
"""

from .config_service import ConfigService
from .message_bus import MessageBus, Message, MessageType
from .warehouse_service import WarehouseService, MergeResult
from .memory_warehouse import InMemoryWarehouse
from .mysql_warehouse import MySQLWarehouse
from .changelog_appender import ChangelogAppender
from .replica_merger import ReplicaMerger, select_winners
from .merge_scheduler import MergeScheduler
from .branch_supervisor import BranchSupervisor, TableBranch, BranchStatus
from .demultiplexer import StreamDemultiplexer
from .line_feed import LineFeed
from .metrics_service import MetricsService
from .metrics_endpoint import MetricsEndpoint

__all__ = [
    'ConfigService',
    'MessageBus',
    'Message',
    'MessageType',
    'WarehouseService',
    'MergeResult',
    'InMemoryWarehouse',
    'MySQLWarehouse',
    'ChangelogAppender',
    'ReplicaMerger',
    'select_winners',
    'MergeScheduler',
    'BranchSupervisor',
    'TableBranch',
    'BranchStatus',
    'StreamDemultiplexer',
    'LineFeed',
    'MetricsService',
    'MetricsEndpoint'
]
