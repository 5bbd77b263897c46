"""
Unit tests for StreamDemultiplexer
"""

import json

import pytest
from unittest.mock import Mock

from cdcapplier.exceptions import BranchFailedError
from cdcapplier.models.config import ApplierConfig
from cdcapplier.models.records import OperationKind
from cdcapplier.services.demultiplexer import StreamDemultiplexer
from cdcapplier.services.message_bus import MessageBus, Message, MessageType


@pytest.fixture
def message_bus():
    return MessageBus()


@pytest.fixture
def supervisor():
    return Mock()


@pytest.fixture
def single_stream_config(config_dict):
    config_dict["input_topics"] = ["all-changes"]
    config_dict["use_single_topic"] = True
    return ApplierConfig.from_dict(config_dict)


def payload(table=None, key=1, token=10, operation="INSERT"):
    data = {"operation": operation, "primary_key": {"id": key}, "ordering_token": token}
    if operation != "DELETE":
        data["values"] = {"status": "new"}
    if table:
        data["table"] = table
    return data


def deliver(bus, channel, data, table=None):
    bus.publish_change_record(channel, data, table=table)
    bus.process_messages(timeout=0.1)


class TestDiscreteChannels:
    """Test per-table channels"""

    def test_routes_by_channel_name(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "orders", payload())

        record = supervisor.dispatch.call_args[0][0]
        assert record.table == "orders"
        assert record.operation is OperationKind.INSERT
        assert demux.get_stats()['records_routed'] == 1

    def test_payload_table_overrides_channel(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "orders", payload(table="order_items"))

        assert supervisor.dispatch.call_args[0][0].table == "order_items"

    def test_arrival_metadata_from_message(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        message = Message(MessageType.CHANGE_RECORD, "orders", data=payload(), timestamp=1234.5)

        record = demux.decode(message)

        assert record.arrival_timestamp == 1234.5
        assert record.message_id == message.message_id

    def test_json_and_bytes_payloads(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        text = json.dumps(payload())

        from_text = demux.decode(Message(MessageType.CHANGE_RECORD, "orders", data=text))
        from_bytes = demux.decode(Message(MessageType.CHANGE_RECORD, "orders", data=text.encode("utf-8")))

        assert from_text == from_bytes

    def test_change_record_passthrough(self, config, message_bus, supervisor, record_factory):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        record = record_factory()

        assert demux.decode(Message(MessageType.CHANGE_RECORD, "orders", data=record)) is record

    def test_unknown_channel_ignored(self, config, message_bus, supervisor):
        metrics = Mock()
        demux = StreamDemultiplexer(config, message_bus, supervisor, metrics_service=metrics)
        demux.start()

        deliver(message_bus, "payments", payload())

        supervisor.dispatch.assert_not_called()
        assert demux.get_stats()['unknown_channel'] == 1
        metrics.record_rejected.assert_called_once_with("unknown_channel")

    def test_malformed_record_fails_its_table(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "orders", {"operation": "INSERT", "primary_key": {"id": 1}})

        supervisor.dispatch.assert_not_called()
        table, reason = supervisor.fail_table.call_args[0]
        assert table == "orders"
        assert "Malformed change record" in reason
        assert demux.get_stats()['malformed'] == 1

    def test_invalid_utf8_fails_its_table(self, config, message_bus, supervisor):
        """Undecodable bytes on a table's channel halt that table"""
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "orders", b'{"operation": "INSERT", "x": "\xff"}')

        supervisor.dispatch.assert_not_called()
        table, reason = supervisor.fail_table.call_args[0]
        assert table == "orders"
        assert "UTF-8" in reason
        assert demux.get_stats()['malformed'] == 1

    def test_mistyped_fields_fail_their_table(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()
        bad_values = dict(payload(), values=[1, 2])
        bad_arrival = dict(payload(), arrival_timestamp="soon")

        deliver(message_bus, "orders", bad_values)
        deliver(message_bus, "customers", bad_arrival)

        supervisor.dispatch.assert_not_called()
        failed = [call[0][0] for call in supervisor.fail_table.call_args_list]
        assert failed == ["orders", "customers"]
        assert demux.get_stats()['malformed'] == 2

    def test_failed_branch_counted(self, config, message_bus, supervisor):
        supervisor.dispatch.side_effect = BranchFailedError("orders", "halted")
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "orders", payload())

        stats = demux.get_stats()
        assert stats['branch_failed'] == 1
        assert stats['records_routed'] == 0

    def test_stop_unsubscribes(self, config, message_bus, supervisor):
        demux = StreamDemultiplexer(config, message_bus, supervisor)
        demux.start()
        demux.stop()

        deliver(message_bus, "orders", payload())

        supervisor.dispatch.assert_not_called()


class TestSingleStream:
    """Test one shared channel carrying many tables"""

    def test_routes_by_embedded_table(self, single_stream_config, message_bus, supervisor):
        demux = StreamDemultiplexer(single_stream_config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "all-changes", payload(table="orders"))
        deliver(message_bus, "all-changes", payload(table="customers"))

        tables = [call[0][0].table for call in supervisor.dispatch.call_args_list]
        assert tables == ["orders", "customers"]

    def test_message_target_names_table(self, single_stream_config, message_bus, supervisor):
        demux = StreamDemultiplexer(single_stream_config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "all-changes", payload(), table="orders")

        assert supervisor.dispatch.call_args[0][0].table == "orders"

    def test_unattributable_record_reported(self, single_stream_config, message_bus, supervisor):
        """A record with no table is logged, counted and published as an error"""
        errors = Mock()
        message_bus.subscribe(MessageType.ERROR, errors)
        demux = StreamDemultiplexer(single_stream_config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "all-changes", payload())
        message_bus.process_messages(timeout=0.1)

        supervisor.dispatch.assert_not_called()
        supervisor.fail_table.assert_not_called()
        assert demux.get_stats()['unattributable'] == 1
        error = errors.call_args[0][0]
        assert error.source == "demultiplexer"
        assert error.target == "all-changes"

    def test_invalid_json_unattributable(self, single_stream_config, message_bus, supervisor):
        demux = StreamDemultiplexer(single_stream_config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "all-changes", "{not json")

        assert demux.get_stats()['unattributable'] == 1

    def test_invalid_utf8_unattributable(self, single_stream_config, message_bus, supervisor):
        errors = Mock()
        message_bus.subscribe(MessageType.ERROR, errors)
        demux = StreamDemultiplexer(single_stream_config, message_bus, supervisor)
        demux.start()

        deliver(message_bus, "all-changes", b"\xff\xfe")
        message_bus.process_messages(timeout=0.1)

        assert demux.get_stats()['unattributable'] == 1
        assert "UTF-8" in errors.call_args[0][0].data
