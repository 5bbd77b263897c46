"""
Main applier service for the CDC change applier
Wires the message bus, table branches, merge scheduler and monitoring together
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Callable, List
import structlog

from . import __version__
from .exceptions import ApplierException
from .models.config import ApplierConfig, RunDescriptor, WarehouseConfig
from .services import (
    ConfigService,
    MessageBus,
    MessageType,
    Message,
    WarehouseService,
    InMemoryWarehouse,
    MySQLWarehouse,
    BranchSupervisor,
    MergeScheduler,
    StreamDemultiplexer,
    LineFeed,
    MetricsService,
    MetricsEndpoint
)
from .utils.logger import bind_run_context, clear_run_context


class ServiceStatus(Enum):
    """Service status enumeration"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Service statistics"""
    status: ServiceStatus
    uptime: float
    run_id: Optional[str]
    tables_count: int
    failed_tables: List[str]
    message_bus_stats: Dict[str, Any]
    demultiplexer_stats: Dict[str, Any]
    branch_stats: Dict[str, Dict[str, Any]]


def create_warehouse(config: WarehouseConfig) -> WarehouseService:
    """Build the warehouse backend named by the configuration"""
    if config.type == "mysql":
        return MySQLWarehouse(config)
    return InMemoryWarehouse()


class ApplierService:
    """Pipeline coordinator: one branch per table, one scheduler for all"""

    def __init__(self, warehouse: Optional[WarehouseService] = None,
                 metrics_service: Optional[MetricsService] = None,
                 clock: Callable[[], float] = time.monotonic,
                 tick_interval: float = 1.0):
        self.logger = structlog.get_logger()
        self.config_service = ConfigService()
        self.config: Optional[ApplierConfig] = None
        self.run_descriptor: Optional[RunDescriptor] = None

        self.warehouse = warehouse
        self.metrics_service = metrics_service
        self.clock = clock
        self.tick_interval = tick_interval

        self.message_bus: Optional[MessageBus] = None
        self.supervisor: Optional[BranchSupervisor] = None
        self.scheduler: Optional[MergeScheduler] = None
        self.demultiplexer: Optional[StreamDemultiplexer] = None
        self.metrics_endpoint: Optional[MetricsEndpoint] = None
        self.line_feed: Optional[LineFeed] = None

        self._status = ServiceStatus.STOPPED
        self._status_lock = threading.RLock()
        self._start_time: Optional[float] = None
        self._shutdown_event = threading.Event()

        self._message_bus_thread: Optional[threading.Thread] = None
        self._message_bus_stop = threading.Event()

    def initialize(self, config_path: str) -> None:
        """Load configuration from a file and build the pipeline"""
        self.configure(self.config_service.load_config(config_path))
        self.logger.info("Applier service initialized", config_path=config_path)

    def configure(self, config: ApplierConfig) -> None:
        """Build the pipeline for an already validated configuration"""
        self.config = config
        self.run_descriptor = RunDescriptor.create(config, __version__)
        bind_run_context(self.run_descriptor)

        self.message_bus = MessageBus(max_queue_size=config.queue_size)
        if self.warehouse is None:
            self.warehouse = create_warehouse(config.warehouse)
        if self.metrics_service is None:
            self.metrics_service = MetricsService()
        self.metrics_service.set_run_info(self.run_descriptor)

        self.supervisor = BranchSupervisor(
            config, self.warehouse, self.message_bus,
            metrics_service=self.metrics_service,
            on_branch_created=self._on_branch_created,
            on_branch_failed=self._on_branch_failed
        )
        self.metrics_service.set_supervisor(self.supervisor)

        self.scheduler = MergeScheduler(
            config.update_frequency_secs,
            self.supervisor.request_merge,
            clock=self.clock,
            tick_interval=self.tick_interval,
            metrics_service=self.metrics_service
        )
        self.demultiplexer = StreamDemultiplexer(
            config, self.message_bus, self.supervisor, metrics_service=self.metrics_service)

        if config.monitoring.enabled:
            self.metrics_endpoint = MetricsEndpoint(
                self.metrics_service, host=config.monitoring.host, port=config.monitoring.port)

        self.message_bus.subscribe(MessageType.ERROR, self._handle_error)
        self.message_bus.subscribe(MessageType.BRANCH_FAILED, self._handle_branch_failed)

        self.logger.info("Applier pipeline configured",
                         run_id=self.run_descriptor.run_id,
                         version=self.run_descriptor.version,
                         labels=self.run_descriptor.labels_dict(),
                         channel_kind=config.channel_kind,
                         channels=config.input_channels,
                         single_stream=config.use_single_topic,
                         change_log_dataset=config.change_log_dataset,
                         replica_dataset=config.replica_dataset,
                         update_frequency_secs=config.update_frequency_secs,
                         warehouse=config.warehouse.type)

    def start(self) -> None:
        """Start all services and threads"""
        if self.config is None:
            raise ApplierException("Applier service not configured")

        with self._status_lock:
            if self._status != ServiceStatus.STOPPED:
                self.logger.warning("Services already started or starting", status=self._status.value)
                return
            self._status = ServiceStatus.STARTING
            self._start_time = time.time()

        try:
            self.demultiplexer.start()
            self._start_message_bus_processing()
            self.scheduler.start()
            if self.metrics_endpoint:
                self.metrics_endpoint.start()
        except Exception as e:
            with self._status_lock:
                self._status = ServiceStatus.ERROR
            self.logger.error("Failed to start applier services", error=str(e))
            self._stop_components()
            raise

        with self._status_lock:
            self._status = ServiceStatus.RUNNING
        self.logger.info("Applier services started", run_id=self.run_descriptor.run_id)

    def submit(self, channel: str, payload: Any, table: Optional[str] = None,
               timeout: Optional[float] = None) -> bool:
        """Publish one transport message; blocks while the bus is full"""
        return self.message_bus.publish_change_record(
            channel, payload, table=table, block=True, timeout=timeout)

    def run(self, input_path: Optional[str] = None) -> None:
        """Run until shutdown is requested, optionally feeding a line file"""
        self.start()
        try:
            if input_path:
                self.line_feed = LineFeed(input_path, self.message_bus)
                self.line_feed.start()

            last_stats_time = time.time()
            while not self._shutdown_event.wait(1.0):
                if time.time() - last_stats_time >= 30.0:
                    stats = self.get_stats()
                    self.logger.info("Service status",
                                     status=stats.status.value,
                                     uptime=round(stats.uptime, 1),
                                     tables=stats.tables_count,
                                     failed_tables=stats.failed_tables,
                                     bus_queue_size=self.message_bus.get_queue_size())
                    last_stats_time = time.time()
        finally:
            self.cleanup()

    def request_shutdown(self) -> None:
        """Ask run() to stop; safe to call from a signal handler"""
        self.logger.info("Shutdown requested")
        self._shutdown_event.set()

    def cleanup(self) -> None:
        """Stop everything, appending queued records first"""
        with self._status_lock:
            if self._status in (ServiceStatus.STOPPED, ServiceStatus.STOPPING):
                return
            self._status = ServiceStatus.STOPPING

        self.logger.info("Stopping applier services")
        self._stop_components()

        with self._status_lock:
            self._status = ServiceStatus.STOPPED
        self.logger.info("Applier services stopped")
        clear_run_context()

    def _stop_components(self) -> None:
        if self.line_feed:
            self.line_feed.stop()

        # Stop ticking before draining so no merge starts during shutdown
        self.scheduler.stop()

        self._stop_message_bus_processing()
        delivered = self.message_bus.drain()
        if delivered:
            self.logger.info("Delivered queued messages before shutdown", messages=delivered)
        self.demultiplexer.stop()

        self.supervisor.stop_all()
        self.message_bus.request_shutdown()

        if self.metrics_endpoint:
            try:
                self.metrics_endpoint.stop()
            except Exception as e:
                self.logger.error("Error stopping metrics endpoint", error=str(e))

        try:
            self.warehouse.close()
        except Exception as e:
            self.logger.error("Error closing warehouse", error=str(e))

    def _start_message_bus_processing(self) -> None:
        self._message_bus_stop.clear()
        self._message_bus_thread = threading.Thread(
            target=self._message_bus_worker,
            name="message_bus_worker"
        )
        self._message_bus_thread.daemon = True
        self._message_bus_thread.start()

    def _stop_message_bus_processing(self) -> None:
        self._message_bus_stop.set()
        if self._message_bus_thread and self._message_bus_thread.is_alive():
            self._message_bus_thread.join(timeout=5.0)
            if self._message_bus_thread.is_alive():
                self.logger.warning("Message bus thread did not stop gracefully")

    def _message_bus_worker(self) -> None:
        """Message bus processing worker thread"""
        while not self._message_bus_stop.is_set():
            self.message_bus.process_messages(timeout=0.5)

    def _on_branch_created(self, table: str) -> None:
        self.scheduler.register(table)

    def _on_branch_failed(self, table: str, reason: str) -> None:
        self.scheduler.unregister(table)

    def _handle_error(self, message: Message) -> None:
        self.logger.warning("Pipeline error reported",
                            source=message.source,
                            target=message.target,
                            error=message.data)

    def _handle_branch_failed(self, message: Message) -> None:
        self.logger.error("Table branch halted, other tables continue",
                          table=message.target,
                          reason=message.data)

    def get_status(self) -> ServiceStatus:
        with self._status_lock:
            return self._status

    def is_running(self) -> bool:
        return self.get_status() == ServiceStatus.RUNNING

    def get_stats(self) -> ServiceStats:
        """Get comprehensive service statistics"""
        uptime = time.time() - self._start_time if self._start_time else 0.0
        branch_stats = self.supervisor.get_all_stats() if self.supervisor else {}
        return ServiceStats(
            status=self.get_status(),
            uptime=uptime,
            run_id=self.run_descriptor.run_id if self.run_descriptor else None,
            tables_count=len(branch_stats),
            failed_tables=self.supervisor.failed_tables() if self.supervisor else [],
            message_bus_stats=self.message_bus.get_stats() if self.message_bus else {},
            demultiplexer_stats=self.demultiplexer.get_stats() if self.demultiplexer else {},
            branch_stats=branch_stats
        )
