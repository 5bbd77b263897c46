"""
Stream demultiplexer for the CDC change applier
Splits input channels into one logical stream per source table
"""

import json
import threading
from typing import Dict, Any, Optional

import structlog

from ..exceptions import RecordError, BranchFailedError
from ..models.config import ApplierConfig
from ..models.records import ChangeRecord
from .branch_supervisor import BranchSupervisor
from .message_bus import MessageBus, MessageType, Message


class StreamDemultiplexer:
    """
    Routes CHANGE_RECORD messages from the bus to table branches

    With use_single_topic every message must name its table. With discrete
    channels a payload that does not name one belongs to the table its
    channel is named after.
    """

    def __init__(self, config: ApplierConfig, message_bus: MessageBus,
                 supervisor: BranchSupervisor, metrics_service=None):
        self.config = config
        self.message_bus = message_bus
        self.supervisor = supervisor
        self.metrics_service = metrics_service

        self.logger = structlog.get_logger()

        self._channels = frozenset(config.input_channels)
        self._subscribed = False

        self._stats = {
            'records_routed': 0,
            'unknown_channel': 0,
            'malformed': 0,
            'unattributable': 0,
            'branch_failed': 0,
        }
        self._stats_lock = threading.Lock()

    def start(self) -> None:
        if self._subscribed:
            return
        self.message_bus.subscribe(MessageType.CHANGE_RECORD, self._handle_change_record)
        self._subscribed = True
        self.logger.info("Stream demultiplexer started",
                         channel_kind=self.config.channel_kind,
                         channels=sorted(self._channels),
                         single_stream=self.config.use_single_topic)

    def stop(self) -> None:
        if not self._subscribed:
            return
        self.message_bus.unsubscribe(MessageType.CHANGE_RECORD, self._handle_change_record)
        self._subscribed = False
        self.logger.info("Stream demultiplexer stopped")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return self._stats.copy()

    def _count(self, key: str, reason: Optional[str] = None) -> None:
        with self._stats_lock:
            self._stats[key] += 1
        if reason and self.metrics_service:
            self.metrics_service.record_rejected(reason)

    def _default_table(self, message: Message) -> Optional[str]:
        if message.target:
            return message.target
        if self.config.use_single_topic:
            return None
        return message.source

    def _handle_change_record(self, message: Message) -> None:
        """Handle change record message from message bus"""
        if message.source not in self._channels:
            self._count('unknown_channel', 'unknown_channel')
            self.logger.debug("Ignoring message from unconfigured channel",
                              channel=message.source,
                              message_id=message.message_id)
            return

        try:
            record = self.decode(message)
        except RecordError as e:
            self._reject(message, e)
            return

        try:
            self.supervisor.dispatch(record)
        except BranchFailedError as e:
            self._count('branch_failed', 'branch_failed')
            self.logger.warning("Dropping record for failed table branch",
                                table=e.table,
                                reason=e.reason,
                                message_id=record.message_id)
            return

        self._count('records_routed')

    def decode(self, message: Message) -> ChangeRecord:
        """Turn a bus message into a ChangeRecord"""
        data = message.data
        if isinstance(data, ChangeRecord):
            return data

        if isinstance(data, (bytes, bytearray)):
            try:
                data = data.decode('utf-8')
            except UnicodeDecodeError as e:
                raise RecordError(f"Change record payload is not valid UTF-8: {e}")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise RecordError(f"Change record payload is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise RecordError(f"Change record payload must be a mapping, got {type(data).__name__}")

        payload = dict(data)
        payload.setdefault('arrival_timestamp', message.timestamp)
        payload.setdefault('message_id', message.message_id)
        return ChangeRecord.from_dict(payload, table=self._default_table(message))

    def _reject(self, message: Message, error: RecordError) -> None:
        table = None
        if isinstance(message.data, dict):
            table = message.data.get('table')
        table = table or self._default_table(message)

        if table:
            # The table is known, so the bad record halts only that branch
            self._count('malformed', 'malformed')
            self.logger.error("Malformed change record",
                              table=table,
                              channel=message.source,
                              message_id=message.message_id,
                              error=str(error))
            self.supervisor.fail_table(table, f"Malformed change record: {error}")
            return

        self._count('unattributable', 'unattributable')
        self.logger.error("Change record has no table identifier",
                          channel=message.source,
                          message_id=message.message_id,
                          error=str(error))
        self.message_bus.publish_error("demultiplexer", error, target=message.source)
