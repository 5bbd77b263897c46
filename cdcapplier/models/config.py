"""
Configuration models for the CDC change applier
"""

import re
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Dict, Any, Optional, List, Tuple

from ..exceptions import ConfigurationError, SinkError
from ..utils.retry import RetryConfig


SECONDS_PER_DAY = 24 * 60 * 60
MAX_MERGES_PER_TABLE_PER_DAY = 1000

# Integer division first, then 10% headroom for scheduling jitter: 95 seconds.
MINIMUM_UPDATE_FREQUENCY_SECONDS = round((SECONDS_PER_DAY // MAX_MERGES_PER_TABLE_PER_DAY) * 1.10)

ENGINE_LABELS = {
    'cdc-applier': 'changelog-replica',
    'cdc-applier-template': 'cdc_changelog_replica',
}

WAREHOUSE_TYPES = ('memory', 'mysql')


def validate_update_frequency(update_frequency_secs: Any) -> int:
    """Reject merge frequencies that could exceed the daily merge quota"""
    if isinstance(update_frequency_secs, bool) or not isinstance(update_frequency_secs, int):
        raise ConfigurationError(
            f"update_frequency_secs must be an integer, got {update_frequency_secs!r}")
    if update_frequency_secs < MINIMUM_UPDATE_FREQUENCY_SECONDS:
        raise ConfigurationError(
            f"The warehouse supports at most {MAX_MERGES_PER_TABLE_PER_DAY:,} merges per table per day. "
            f"Please select update_frequency_secs of {MINIMUM_UPDATE_FREQUENCY_SECONDS} or more "
            f"to fit this limit (got {update_frequency_secs})")
    return update_frequency_secs


def _split_names(value: Any) -> Optional[List[str]]:
    """Accept a list or a comma-separated string of channel names"""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(',')
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"Expected a list of names, got {type(value).__name__}")
    names = [str(name).strip() for name in value if str(name).strip()]
    return names or None


def sanitize_table_name(table: str) -> str:
    """Make a source table identifier usable as a warehouse table name"""
    return re.sub(r'[^0-9A-Za-z_]', '_', table)


@dataclass
class WarehouseConfig:
    """Warehouse connection configuration"""
    type: str = "memory"
    host: str = ""
    port: int = 3306
    user: str = ""
    password: str = ""
    database: str = ""
    charset: str = "utf8mb4"

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.type not in WAREHOUSE_TYPES:
            raise ConfigurationError(
                f"Unsupported warehouse type '{self.type}', expected one of {', '.join(WAREHOUSE_TYPES)}")
        if self.type == "mysql":
            if not self.host:
                raise ConfigurationError("Warehouse host is required")
            if not self.user:
                raise ConfigurationError("Warehouse user is required")
            if not (1 <= self.port <= 65535):
                raise ConfigurationError("Port must be between 1 and 65535")

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to pymysql connection parameters"""
        params = {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'charset': self.charset,
            'autocommit': False
        }
        if self.database:
            params['database'] = self.database
        return params


@dataclass
class MonitoringConfig:
    """Prometheus endpoint configuration"""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self):
        if not (1 <= self.port <= 65535):
            raise ConfigurationError("Monitoring port must be between 1 and 65535")


@dataclass(frozen=True)
class TableBinding:
    """One source table paired with its changelog and replica sinks"""
    table: str
    changelog_dataset: str
    replica_dataset: str
    update_frequency_secs: int

    @property
    def changelog_table(self) -> str:
        return f"{sanitize_table_name(self.table)}_changelog"

    @property
    def replica_table(self) -> str:
        return sanitize_table_name(self.table)

    @property
    def qualified_changelog_table(self) -> str:
        return f"{self.changelog_dataset}.{self.changelog_table}"

    @property
    def qualified_replica_table(self) -> str:
        return f"{self.replica_dataset}.{self.replica_table}"


@dataclass
class ApplierConfig:
    """Main change applier configuration"""
    change_log_dataset: str
    replica_dataset: str
    update_frequency_secs: int
    input_topics: Optional[List[str]] = None
    input_subscriptions: Optional[List[str]] = None
    use_single_topic: bool = False
    project: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    warehouse: WarehouseConfig = field(default_factory=WarehouseConfig)
    retry: RetryConfig = field(default_factory=lambda: RetryConfig(
        max_attempts=5, retryable_exceptions=(SinkError,)))
    merge_batch_size: Optional[int] = None
    queue_size: int = 10000
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self):
        """Validate configuration after initialization"""
        self.input_topics = _split_names(self.input_topics)
        self.input_subscriptions = _split_names(self.input_subscriptions)

        if self.input_topics and self.input_subscriptions:
            raise ConfigurationError(
                "Either input topics or input subscriptions must be provided, not both")
        if not self.input_topics and not self.input_subscriptions:
            raise ConfigurationError(
                "One of input_topics or input_subscriptions must be provided")
        if self.use_single_topic and len(self.input_channels) != 1:
            raise ConfigurationError(
                "use_single_topic expects exactly one input topic or subscription, "
                f"got {len(self.input_channels)}")

        if not self.change_log_dataset:
            raise ConfigurationError("change_log_dataset is required")
        if not self.replica_dataset:
            raise ConfigurationError("replica_dataset is required")

        validate_update_frequency(self.update_frequency_secs)

        if self.merge_batch_size is not None and self.merge_batch_size <= 0:
            raise ConfigurationError("merge_batch_size must be positive")
        if self.queue_size <= 0:
            raise ConfigurationError("queue_size must be positive")
        max_attempts = self.retry.max_attempts
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ConfigurationError(f"retry.max_attempts must be an integer of at least 1, got {max_attempts!r}")

    @property
    def input_channels(self) -> List[str]:
        return list(self.input_topics or self.input_subscriptions or [])

    @property
    def channel_kind(self) -> str:
        return "topic" if self.input_topics else "subscription"

    def binding_for(self, table: str) -> TableBinding:
        """Build the immutable binding for a discovered table"""
        return TableBinding(
            table=table,
            changelog_dataset=self.change_log_dataset,
            replica_dataset=self.replica_dataset,
            update_frequency_secs=self.update_frequency_secs
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ApplierConfig':
        """Create ApplierConfig from dictionary"""
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a dictionary")
        try:
            retry_data = dict(config_dict.get('retry') or {})
            known_retry = {f.name for f in fields(RetryConfig)} - {'retryable_exceptions'}
            unknown = set(retry_data) - known_retry
            if unknown:
                raise ConfigurationError(f"Unknown retry options: {', '.join(sorted(unknown))}")
            retry_data.setdefault('max_attempts', 5)

            labels = config_dict.get('labels') or {}
            if not isinstance(labels, dict):
                raise ConfigurationError("Labels must be a dictionary")

            return cls(
                change_log_dataset=config_dict['change_log_dataset'],
                replica_dataset=config_dict['replica_dataset'],
                update_frequency_secs=config_dict['update_frequency_secs'],
                input_topics=config_dict.get('input_topics'),
                input_subscriptions=config_dict.get('input_subscriptions'),
                use_single_topic=bool(config_dict.get('use_single_topic', False)),
                project=config_dict.get('project'),
                labels={str(k): str(v) for k, v in labels.items()},
                warehouse=WarehouseConfig(**(config_dict.get('warehouse') or {})),
                retry=RetryConfig(retryable_exceptions=(SinkError,), **retry_data),
                merge_batch_size=config_dict.get('merge_batch_size'),
                queue_size=config_dict.get('queue_size', 10000),
                monitoring=MonitoringConfig(**(config_dict.get('monitoring') or {}))
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing required configuration key: {e}")
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration format: {e}")


@dataclass(frozen=True)
class RunDescriptor:
    """Immutable run-wide metadata, built once at startup"""
    run_id: str
    started_at: float
    version: str
    labels: Tuple[Tuple[str, str], ...]

    @classmethod
    def create(cls, config: ApplierConfig, version: str) -> 'RunDescriptor':
        """User labels first, fixed engine labels override them"""
        labels = dict(config.labels)
        if config.project:
            labels['cdc-applier-project'] = config.project
        labels.update(ENGINE_LABELS)
        labels['cdc-applier-version'] = version
        return cls(
            run_id=uuid.uuid4().hex[:12],
            started_at=time.time(),
            version=version,
            labels=tuple(sorted(labels.items()))
        )

    def labels_dict(self) -> Dict[str, str]:
        return dict(self.labels)
