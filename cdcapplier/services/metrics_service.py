"""
Metrics service for Prometheus monitoring
"""

import re
from typing import Dict, Any, Optional
from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest,
    CONTENT_TYPE_LATEST
)
import structlog

from ..models.config import RunDescriptor


BRANCH_STATUS_VALUES = {
    'created': 0,
    'running': 1,
    'stopped': 0,
    'failed': -1,
}


class MetricsService:
    """Service for managing Prometheus metrics"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.logger = structlog.get_logger()
        self.registry = registry or CollectorRegistry()
        self.supervisor = None  # Will be set later

        self._init_metrics()

        self.logger.info("Metrics service initialized")

    def set_supervisor(self, supervisor) -> None:
        """Set branch supervisor reference for health checks"""
        self.supervisor = supervisor

    def _init_metrics(self) -> None:
        """Initialize all Prometheus metrics"""

        # === RUN ===
        self.run_info = Info(
            'cdc_applier_run',
            'Run descriptor and operational labels',
            registry=self.registry
        )

        self.uptime_seconds = Gauge(
            'cdc_applier_uptime_seconds',
            'Seconds since the pipeline started',
            registry=self.registry
        )

        # === INPUT ===
        self.records_received_total = Counter(
            'cdc_records_received_total',
            'Change records routed to a table branch',
            ['table', 'operation'],
            registry=self.registry
        )

        self.messages_rejected_total = Counter(
            'cdc_messages_rejected_total',
            'Messages that could not be routed to a branch',
            ['reason'],
            registry=self.registry
        )

        # === CHANGELOG ===
        self.changelog_appends_total = Counter(
            'cdc_changelog_appends_total',
            'Changelog append attempts by result (appended, duplicate)',
            ['table', 'result'],
            registry=self.registry
        )

        self.changelog_append_retries_total = Counter(
            'cdc_changelog_append_retries_total',
            'Changelog writes retried after a transient error',
            ['table'],
            registry=self.registry
        )

        self.changelog_append_duration = Histogram(
            'cdc_changelog_append_duration_seconds',
            'Time spent appending one record, retries included',
            ['table'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 30.0],
            registry=self.registry
        )

        self.appender_queue_size = Gauge(
            'cdc_appender_queue_size',
            'Records waiting in a branch appender queue',
            ['table'],
            registry=self.registry
        )

        # === MERGE ===
        self.merge_triggers_total = Counter(
            'cdc_merge_triggers_total',
            'Scheduler triggers by result (fired, coalesced, rejected)',
            ['table', 'result'],
            registry=self.registry
        )

        self.merge_passes_total = Counter(
            'cdc_merge_passes_total',
            'Merge passes by status (committed, empty, retry_exhausted, failed)',
            ['table', 'status'],
            registry=self.registry
        )

        self.merge_duration = Histogram(
            'cdc_merge_duration_seconds',
            'Time spent in one merge pass',
            ['table'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry
        )

        self.replica_changes_total = Counter(
            'cdc_replica_changes_total',
            'Replica changes by kind (upserted, deleted, skipped)',
            ['table', 'kind'],
            registry=self.registry
        )

        self.merge_cursor = Gauge(
            'cdc_merge_cursor',
            'Highest changelog sequence number folded into the replica',
            ['table'],
            registry=self.registry
        )

        # === BRANCHES ===
        self.branch_status = Gauge(
            'cdc_branch_status',
            'Table branch status (1=running, 0=stopped, -1=failed)',
            ['table'],
            registry=self.registry
        )

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format"""
        return generate_latest(self.registry).decode('utf-8')

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def set_run_info(self, descriptor: RunDescriptor) -> None:
        """Publish the run descriptor as an info metric"""
        # Prometheus label names allow only [a-zA-Z0-9_]
        info = {re.sub(r'[^a-zA-Z0-9_]', '_', key): value
                for key, value in descriptor.labels_dict().items()}
        info.update({'run_id': descriptor.run_id, 'version': descriptor.version})
        self.run_info.info(info)

    def set_uptime(self, uptime_seconds: float) -> None:
        self.uptime_seconds.set(uptime_seconds)

    def record_received(self, table: str, operation: str) -> None:
        self.records_received_total.labels(table=table, operation=operation).inc()

    def record_rejected(self, reason: str) -> None:
        self.messages_rejected_total.labels(reason=reason).inc()

    def record_append(self, table: str, appended: bool, duration: float) -> None:
        result = 'appended' if appended else 'duplicate'
        self.changelog_appends_total.labels(table=table, result=result).inc()
        self.changelog_append_duration.labels(table=table).observe(duration)

    def record_append_retry(self, table: str) -> None:
        self.changelog_append_retries_total.labels(table=table).inc()

    def set_queue_size(self, table: str, size: int) -> None:
        self.appender_queue_size.labels(table=table).set(size)

    def record_trigger(self, table: str, result: str) -> None:
        self.merge_triggers_total.labels(table=table, result=result).inc()

    def record_merge(self, table: str, status: str, duration: float = None,
                     upserted: int = 0, deleted: int = 0, skipped: int = 0,
                     cursor: int = None) -> None:
        """Record the outcome of one merge pass"""
        self.merge_passes_total.labels(table=table, status=status).inc()
        if duration is not None:
            self.merge_duration.labels(table=table).observe(duration)
        for kind, count in (('upserted', upserted), ('deleted', deleted), ('skipped', skipped)):
            if count:
                self.replica_changes_total.labels(table=table, kind=kind).inc(count)
        if cursor is not None:
            self.merge_cursor.labels(table=table).set(cursor)

    def set_branch_status(self, table: str, status: str) -> None:
        self.branch_status.labels(table=table).set(BRANCH_STATUS_VALUES.get(status, 0))

    def get_health_status(self) -> Dict[str, Any]:
        """Overall health derived from branch states"""
        if self.supervisor is None:
            return {"status": "unknown", "branches": {}}

        try:
            branch_stats = self.supervisor.get_all_stats()
        except Exception as e:
            self.logger.warning("Failed to get branch stats", error=str(e))
            return {"status": "error", "error": str(e), "branches": {}}

        failed = [table for table, stats in branch_stats.items() if stats.get('status') == 'failed']
        if failed and len(failed) == len(branch_stats):
            status = "critical"
        elif failed:
            status = "warning"
        else:
            status = "healthy"

        return {
            "status": status,
            "failed_tables": failed,
            "branches": branch_stats
        }
