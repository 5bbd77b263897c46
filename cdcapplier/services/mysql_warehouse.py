"""
MySQL warehouse backend for the CDC change applier
"""

import hashlib
import json
import threading
from contextlib import contextmanager
from typing import Dict, Any, Optional, List

import pymysql
import pymysql.err
import structlog

from ..exceptions import SinkError, RecordError, MergeConflictError
from ..models.config import TableBinding, WarehouseConfig
from ..models.records import ChangeRecord, ChangelogEntry, ReplicaRow, OperationKind, canonical_key
from ..utils import SQLBuilder, retry_on_sink_error
from ..utils.sql_builder import CURSOR_TABLE, TOMBSTONE_TABLE
from .warehouse_service import WarehouseService, MergeResult, is_stale


TRANSIENT_ERRORS = (pymysql.err.OperationalError, pymysql.err.InterfaceError)
PERMANENT_ERRORS = (pymysql.err.IntegrityError, pymysql.err.DataError, pymysql.err.ProgrammingError)


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def dedupe_hash(record: ChangeRecord) -> str:
    """SHA-256 of the record's dedupe key, stored in a unique column"""
    return hashlib.sha256(_to_json(list(record.dedupe_key())).encode('utf-8')).hexdigest()


class MySQLWarehouse(WarehouseService):
    """Warehouse on MySQL: one connection per worker thread"""

    def __init__(self, config: WarehouseConfig):
        self.config = config
        self._connections: Dict[str, pymysql.Connection] = {}
        self._connection_lock = threading.RLock()
        self.logger = structlog.get_logger()

    def _connect(self) -> pymysql.Connection:
        connection_params = self.config.to_connection_params()
        connection_params.update({
            'connect_timeout': 10,
            'read_timeout': 30,
            'write_timeout': 30,
            'use_unicode': True,
            'init_command': "SET SESSION TRANSACTION ISOLATION LEVEL READ COMMITTED"
        })
        try:
            return pymysql.connect(**connection_params)
        except TRANSIENT_ERRORS as e:
            raise SinkError(f"Failed to connect to warehouse: {e}")

    def get_connection(self) -> pymysql.Connection:
        """Connection owned by the calling thread, reopened when dropped"""
        connection_name = threading.current_thread().name
        with self._connection_lock:
            connection = self._connections.get(connection_name)
            if connection is not None and not connection.open:
                self.logger.warning("Warehouse connection is no longer valid, reconnecting",
                                    connection_name=connection_name)
                connection = None
            if connection is None:
                connection = self._connect()
                self._connections[connection_name] = connection
            return connection

    def _discard_connection(self) -> None:
        connection_name = threading.current_thread().name
        with self._connection_lock:
            connection = self._connections.pop(connection_name, None)
        if connection is not None:
            try:
                connection.close()
            except pymysql.err.Error as e:
                self.logger.debug("Error closing dropped connection", error=str(e))

    @contextmanager
    def _transaction(self):
        """Cursor whose statements commit together or roll back together"""
        connection = self.get_connection()
        cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
        except TRANSIENT_ERRORS as e:
            self._rollback(connection)
            self._discard_connection()
            raise SinkError(f"Warehouse unavailable: {e}")
        except PERMANENT_ERRORS as e:
            self._rollback(connection)
            raise RecordError(f"Warehouse rejected statement: {e}")
        except Exception:
            self._rollback(connection)
            raise
        finally:
            cursor.close()

    def _rollback(self, connection: pymysql.Connection) -> None:
        try:
            connection.rollback()
        except pymysql.err.Error as e:
            self.logger.warning("Rollback failed", error=str(e))

    @retry_on_sink_error(max_attempts=3)
    def ensure_tables(self, binding: TableBinding) -> None:
        with self._transaction() as cursor:
            cursor.execute(SQLBuilder.build_create_dataset_sql(binding.changelog_dataset))
            cursor.execute(SQLBuilder.build_create_dataset_sql(binding.replica_dataset))
            cursor.execute(SQLBuilder.build_create_changelog_sql(binding.qualified_changelog_table))
            cursor.execute(SQLBuilder.build_create_replica_sql(binding.qualified_replica_table))
            cursor.execute(SQLBuilder.build_create_cursor_table_sql(binding.replica_dataset))
            cursor.execute(SQLBuilder.build_create_tombstone_table_sql(binding.replica_dataset))

        self.logger.info("Warehouse tables ready",
                         table=binding.table,
                         changelog_table=binding.qualified_changelog_table,
                         replica_table=binding.qualified_replica_table)

    def append(self, binding: TableBinding, record: ChangeRecord) -> Optional[ChangelogEntry]:
        row = {
            'dedupe_key': dedupe_hash(record),
            'table_name': record.table,
            'operation': record.operation.value,
            'row_key': record.key,
            'primary_key': _to_json(record.primary_key),
            'row_data': _to_json(record.values),
            'ordering_token': record.ordering_token,
            'arrival_timestamp': record.arrival_timestamp,
            'message_id': record.message_id,
        }
        sql, values = SQLBuilder.build_insert_ignore_sql(binding.qualified_changelog_table, row)

        with self._transaction() as cursor:
            affected = cursor.execute(sql, values)
            if not affected:
                return None
            seq = cursor.lastrowid

        return ChangelogEntry(seq=seq, record=record)

    def read_changelog(self, binding: TableBinding, after_seq: int,
                       limit: Optional[int] = None) -> List[ChangelogEntry]:
        sql = SQLBuilder.build_read_changelog_sql(binding.qualified_changelog_table, limit)
        with self._transaction() as cursor:
            cursor.execute(sql, (binding.table, after_seq))
            rows = cursor.fetchall()

        entries = []
        for seq, table_name, operation, _, primary_key, row_data, token, arrival, message_id in rows:
            record = ChangeRecord(
                table=table_name,
                operation=OperationKind(operation),
                primary_key=json.loads(primary_key),
                ordering_token=int(token),
                values=json.loads(row_data) if row_data is not None else None,
                arrival_timestamp=float(arrival),
                message_id=message_id
            )
            entries.append(ChangelogEntry(seq=int(seq), record=record))
        return entries

    def get_cursor(self, binding: TableBinding) -> int:
        table_name = f"{binding.replica_dataset}.{CURSOR_TABLE}"
        with self._transaction() as cursor:
            cursor.execute(
                SQLBuilder.build_select_sql(table_name, ['cursor_seq'], ['table_name']),
                (binding.table,))
            row = cursor.fetchone()
        return int(row[0]) if row else 0

    def get_replica_row(self, binding: TableBinding, primary_key: Dict[str, Any]) -> Optional[ReplicaRow]:
        with self._transaction() as cursor:
            cursor.execute(
                SQLBuilder.build_select_sql(
                    binding.qualified_replica_table, ['primary_key', 'row_data', 'ordering_token'], ['row_key']),
                (canonical_key(primary_key),))
            row = cursor.fetchone()
        if not row:
            return None
        return ReplicaRow(
            table=binding.table,
            primary_key=json.loads(row[0]),
            values=json.loads(row[1]),
            ordering_token=int(row[2])
        )

    def apply_merge(self, binding: TableBinding, winners: List[ChangelogEntry],
                    expected_cursor: int, new_cursor: int) -> MergeResult:
        cursor_table = f"{binding.replica_dataset}.{CURSOR_TABLE}"
        tombstone_table = f"{binding.replica_dataset}.{TOMBSTONE_TABLE}"
        result = MergeResult(table=binding.table, cursor=new_cursor, entries=len(winners))

        with self._transaction() as cursor:
            # Locking the cursor row serializes concurrent merges of one table
            cursor.execute(
                SQLBuilder.build_select_sql(cursor_table, ['cursor_seq'], ['table_name'], for_update=True),
                (binding.table,))
            row = cursor.fetchone()
            stored_cursor = int(row[0]) if row else 0
            if stored_cursor != expected_cursor:
                raise MergeConflictError(
                    f"Merge cursor for table '{binding.table}' moved from {expected_cursor} to {stored_cursor}")

            for winner in winners:
                stored_token = self._stored_token(cursor, binding, tombstone_table, winner.key)
                if is_stale(winner, stored_token):
                    result.skipped += 1
                    continue

                record = winner.record
                if record.operation is OperationKind.DELETE:
                    sql, values = SQLBuilder.build_delete_sql(
                        binding.qualified_replica_table, {'row_key': winner.key})
                    cursor.execute(sql, values)
                    sql, values = SQLBuilder.build_upsert_sql(
                        tombstone_table,
                        {'table_name': binding.table, 'row_key': winner.key,
                         'ordering_token': record.ordering_token},
                        ['table_name', 'row_key'])
                    cursor.execute(sql, values)
                    result.deleted += 1
                else:
                    sql, values = SQLBuilder.build_upsert_sql(
                        binding.qualified_replica_table,
                        {'row_key': winner.key,
                         'primary_key': _to_json(record.primary_key),
                         'row_data': _to_json(record.row_values()),
                         'ordering_token': record.ordering_token},
                        'row_key')
                    cursor.execute(sql, values)
                    sql, values = SQLBuilder.build_delete_sql(
                        tombstone_table, {'table_name': binding.table, 'row_key': winner.key})
                    cursor.execute(sql, values)
                    result.upserted += 1

            sql, values = SQLBuilder.build_upsert_sql(
                cursor_table, {'table_name': binding.table, 'cursor_seq': new_cursor}, 'table_name')
            cursor.execute(sql, values)

        return result

    def _stored_token(self, cursor, binding: TableBinding, tombstone_table: str, key: str) -> Optional[int]:
        """Token of the replica row, or of the tombstone left by its delete"""
        cursor.execute(
            SQLBuilder.build_select_sql(
                binding.qualified_replica_table, ['ordering_token'], ['row_key'], for_update=True),
            (key,))
        row = cursor.fetchone()
        if row:
            return int(row[0])

        cursor.execute(
            SQLBuilder.build_select_sql(
                tombstone_table, ['ordering_token'], ['table_name', 'row_key'], for_update=True),
            (binding.table, key))
        row = cursor.fetchone()
        return int(row[0]) if row else None

    def test_connection(self) -> bool:
        """Test warehouse connection"""
        try:
            with self._transaction() as cursor:
                cursor.execute("SELECT 1")
                result = cursor.fetchone()
                return result[0] == 1
        except SinkError:
            return False

    def close(self) -> None:
        """Close all connections"""
        with self._connection_lock:
            connections = list(self._connections.items())
            self._connections.clear()

        for connection_name, connection in connections:
            try:
                connection.close()
            except pymysql.err.Error as e:
                self.logger.warning("Error closing connection", connection_name=connection_name, error=str(e))
        self.logger.info("All warehouse connections closed")
