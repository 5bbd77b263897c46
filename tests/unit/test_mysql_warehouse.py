"""
Unit tests for MySQLWarehouse with a mocked PyMySQL driver
"""

import json

import pymysql
import pytest
from unittest.mock import Mock, MagicMock, patch

from cdcapplier.exceptions import SinkError, RecordError, MergeConflictError
from cdcapplier.models.config import WarehouseConfig
from cdcapplier.models.records import ChangelogEntry, OperationKind
from cdcapplier.services.mysql_warehouse import MySQLWarehouse, dedupe_hash


@pytest.fixture
def mock_cursor():
    cursor = MagicMock()
    cursor.execute.return_value = 1
    return cursor


@pytest.fixture
def mock_connection(mock_cursor):
    connection = MagicMock()
    connection.open = True
    connection.cursor.return_value = mock_cursor
    return connection


@pytest.fixture
def mysql_warehouse(mock_connection):
    config = WarehouseConfig(type="mysql", host="localhost", user="applier", password="secret")
    with patch('cdcapplier.services.mysql_warehouse.pymysql.connect', return_value=mock_connection) as connect:
        warehouse = MySQLWarehouse(config)
        warehouse.connect_mock = connect
        yield warehouse


def executed_sql(cursor):
    return [call[0][0] for call in cursor.execute.call_args_list]


class TestConnection:
    """Test connection handling"""

    def test_connection_params(self, mysql_warehouse, mock_cursor, binding):
        mock_cursor.fetchone.return_value = None
        mysql_warehouse.get_cursor(binding)

        params = mysql_warehouse.connect_mock.call_args[1]
        assert params['host'] == "localhost"
        assert params['autocommit'] is False
        assert "READ COMMITTED" in params['init_command']

    def test_connection_reused_per_thread(self, mysql_warehouse, mock_cursor, binding):
        mock_cursor.fetchone.return_value = None
        mysql_warehouse.get_cursor(binding)
        mysql_warehouse.get_cursor(binding)

        assert mysql_warehouse.connect_mock.call_count == 1

    def test_connect_failure_is_transient(self, binding):
        config = WarehouseConfig(type="mysql", host="localhost", user="applier")
        error = pymysql.err.OperationalError(2003, "Can't connect")
        with patch('cdcapplier.services.mysql_warehouse.pymysql.connect', side_effect=error):
            warehouse = MySQLWarehouse(config)
            with pytest.raises(SinkError, match="Failed to connect"):
                warehouse.get_cursor(binding)

    def test_test_connection(self, mysql_warehouse, mock_cursor):
        mock_cursor.fetchone.return_value = (1,)
        assert mysql_warehouse.test_connection() is True

    def test_close(self, mysql_warehouse, mock_connection, mock_cursor, binding):
        mock_cursor.fetchone.return_value = None
        mysql_warehouse.get_cursor(binding)

        mysql_warehouse.close()

        mock_connection.close.assert_called_once()


class TestAppend:
    """Test changelog appends"""

    def test_append(self, mysql_warehouse, mock_connection, mock_cursor, binding, record_factory):
        mock_cursor.lastrowid = 7
        record = record_factory(key=1, token=10)

        entry = mysql_warehouse.append(binding, record)

        assert entry.seq == 7
        assert entry.record is record
        sql, values = mock_cursor.execute.call_args[0]
        assert sql.startswith("INSERT IGNORE INTO `cdc_changelog`.`orders_changelog`")
        assert values[0] == dedupe_hash(record)
        assert json.loads(values[4]) == {"id": 1}
        mock_connection.commit.assert_called_once()

    def test_duplicate_append(self, mysql_warehouse, mock_cursor, binding, record_factory):
        mock_cursor.execute.return_value = 0

        assert mysql_warehouse.append(binding, record_factory()) is None

    def test_dedupe_hash_ignores_arrival_metadata(self, record_factory):
        first = record_factory(message_id="a", arrival=1.0)
        redelivered = record_factory(message_id="b", arrival=2.0)

        assert dedupe_hash(first) == dedupe_hash(redelivered)
        assert len(dedupe_hash(first)) == 64

    def test_transient_error(self, mysql_warehouse, mock_connection, mock_cursor, binding, record_factory):
        """Lost connections roll back, are dropped and surface as SinkError"""
        mock_cursor.execute.side_effect = pymysql.err.OperationalError(2013, "Lost connection")

        with pytest.raises(SinkError, match="Lost connection"):
            mysql_warehouse.append(binding, record_factory())

        mock_connection.rollback.assert_called_once()
        mock_connection.commit.assert_not_called()
        assert mysql_warehouse._connections == {}

    def test_permanent_error(self, mysql_warehouse, mock_connection, mock_cursor, binding, record_factory):
        mock_cursor.execute.side_effect = pymysql.err.DataError(1406, "Data too long")

        with pytest.raises(RecordError, match="Data too long"):
            mysql_warehouse.append(binding, record_factory())

        mock_connection.rollback.assert_called_once()


class TestReads:
    """Test reads"""

    def test_read_changelog(self, mysql_warehouse, mock_cursor, binding):
        mock_cursor.fetchall.return_value = [
            (3, "orders", "INSERT", '{"id":1}', '{"id": 1}', '{"status": "new"}', 10, 1000.5, "m1"),
            (4, "orders", "DELETE", '{"id":1}', '{"id": 1}', None, 11, 1001.0, "m2"),
        ]

        entries = mysql_warehouse.read_changelog(binding, after_seq=2, limit=100)

        assert [entry.seq for entry in entries] == [3, 4]
        assert entries[0].record.values == {"status": "new"}
        assert entries[1].record.operation is OperationKind.DELETE
        assert entries[1].record.values is None
        sql, params = mock_cursor.execute.call_args[0]
        assert sql.endswith("LIMIT 100")
        assert "table_name = %s" in sql
        assert params == ("orders", 2)

    def test_get_cursor(self, mysql_warehouse, mock_cursor, binding):
        mock_cursor.fetchone.return_value = (5,)
        assert mysql_warehouse.get_cursor(binding) == 5

        mock_cursor.fetchone.return_value = None
        assert mysql_warehouse.get_cursor(binding) == 0

    def test_get_replica_row(self, mysql_warehouse, mock_cursor, binding):
        mock_cursor.fetchone.return_value = ('{"id": 1}', '{"id": 1, "status": "new"}', 10)

        row = mysql_warehouse.get_replica_row(binding, {"id": 1})

        assert row.values == {"id": 1, "status": "new"}
        assert row.ordering_token == 10
        assert mock_cursor.execute.call_args[0][1] == ('{"id":1}',)


class TestApplyMerge:
    """Test merge transactions"""

    def test_merge_upsert(self, mysql_warehouse, mock_connection, mock_cursor, binding, record_factory):
        # cursor row, replica token, tombstone token
        mock_cursor.fetchone.side_effect = [(0,), None, None]
        winner = ChangelogEntry(seq=1, record=record_factory(key=1, token=10))

        result = mysql_warehouse.apply_merge(binding, [winner], expected_cursor=0, new_cursor=1)

        assert result.upserted == 1
        statements = executed_sql(mock_cursor)
        assert statements[0].endswith("FOR UPDATE")
        assert statements[3].startswith("INSERT INTO `cdc_replica`.`orders`")
        assert statements[4].startswith("DELETE FROM `cdc_replica`.`_replica_tombstones`")
        assert statements[5].startswith("INSERT INTO `cdc_replica`.`_merge_cursors`")
        mock_connection.commit.assert_called_once()

    def test_merge_delete_writes_tombstone(self, mysql_warehouse, mock_cursor, binding, record_factory):
        mock_cursor.fetchone.side_effect = [(0,), (10,)]
        winner = ChangelogEntry(seq=2, record=record_factory(operation="DELETE", key=1, token=11))

        result = mysql_warehouse.apply_merge(binding, [winner], 0, 2)

        assert result.deleted == 1
        statements = executed_sql(mock_cursor)
        assert statements[2].startswith("DELETE FROM `cdc_replica`.`orders`")
        assert statements[3].startswith("INSERT INTO `cdc_replica`.`_replica_tombstones`")

    def test_merge_skips_stale_winner(self, mysql_warehouse, mock_cursor, binding, record_factory):
        mock_cursor.fetchone.side_effect = [(0,), (12,)]
        winner = ChangelogEntry(seq=1, record=record_factory(operation="UPDATE", key=1, token=10))

        result = mysql_warehouse.apply_merge(binding, [winner], 0, 1)

        assert result.skipped == 1
        assert result.upserted == 0
        # cursor lock, replica token lookup, cursor upsert
        assert len(executed_sql(mock_cursor)) == 3

    def test_merge_conflict_rolls_back(self, mysql_warehouse, mock_connection, mock_cursor, binding, record_factory):
        mock_cursor.fetchone.side_effect = [(3,)]
        winner = ChangelogEntry(seq=4, record=record_factory())

        with pytest.raises(MergeConflictError):
            mysql_warehouse.apply_merge(binding, [winner], 0, 4)

        mock_connection.rollback.assert_called_once()
        mock_connection.commit.assert_not_called()

    def test_ensure_tables(self, mysql_warehouse, mock_cursor, binding):
        mysql_warehouse.ensure_tables(binding)

        statements = executed_sql(mock_cursor)
        assert len(statements) == 6
        assert any("`cdc_changelog`.`orders_changelog`" in sql for sql in statements)
        assert any("`cdc_replica`.`_merge_cursors`" in sql for sql in statements)
