"""
SQL builder utilities for the MySQL warehouse backend
"""

from typing import Dict, Any, List, Tuple, Optional, Sequence, Union


CHANGELOG_COLUMNS = [
    'dedupe_key', 'table_name', 'operation', 'row_key', 'primary_key',
    'row_data', 'ordering_token', 'arrival_timestamp', 'message_id'
]

CURSOR_TABLE = '_merge_cursors'
TOMBSTONE_TABLE = '_replica_tombstones'


def quote_identifier(name: str) -> str:
    """Quote a possibly dataset-qualified identifier with backticks"""
    parts = name.split('.')
    return '.'.join('`' + part.replace('`', '``') + '`' for part in parts)


class SQLBuilder:
    """Utility class for building SQL statements"""

    @staticmethod
    def build_create_dataset_sql(dataset: str) -> str:
        return f"CREATE DATABASE IF NOT EXISTS {quote_identifier(dataset)}"

    @staticmethod
    def build_create_changelog_sql(table_name: str) -> str:
        """Append-only history; the unique dedupe key makes redelivery a no-op"""
        return f"""CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} (
    _seq BIGINT NOT NULL AUTO_INCREMENT PRIMARY KEY,
    dedupe_key CHAR(64) NOT NULL,
    table_name VARCHAR(255) NOT NULL,
    operation VARCHAR(8) NOT NULL,
    row_key VARCHAR(512) NOT NULL,
    primary_key JSON NOT NULL,
    row_data JSON NULL,
    ordering_token BIGINT NOT NULL,
    arrival_timestamp DOUBLE NOT NULL,
    message_id VARCHAR(64) NOT NULL,
    appended_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE KEY uq_dedupe_key (dedupe_key)
) ENGINE=InnoDB"""

    @staticmethod
    def build_create_replica_sql(table_name: str) -> str:
        return f"""CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} (
    row_key VARCHAR(512) NOT NULL PRIMARY KEY,
    primary_key JSON NOT NULL,
    row_data JSON NOT NULL,
    ordering_token BIGINT NOT NULL,
    merged_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
) ENGINE=InnoDB"""

    @staticmethod
    def build_create_cursor_table_sql(dataset: str) -> str:
        return f"""CREATE TABLE IF NOT EXISTS {quote_identifier(f'{dataset}.{CURSOR_TABLE}')} (
    table_name VARCHAR(255) NOT NULL PRIMARY KEY,
    cursor_seq BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
) ENGINE=InnoDB"""

    @staticmethod
    def build_create_tombstone_table_sql(dataset: str) -> str:
        return f"""CREATE TABLE IF NOT EXISTS {quote_identifier(f'{dataset}.{TOMBSTONE_TABLE}')} (
    table_name VARCHAR(255) NOT NULL,
    row_key VARCHAR(512) NOT NULL,
    ordering_token BIGINT NOT NULL,
    PRIMARY KEY (table_name, row_key)
) ENGINE=InnoDB"""

    @staticmethod
    def build_insert_ignore_sql(table_name: str, data: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """
        Build INSERT IGNORE statement

        Args:
            table_name: Target table name
            data: Data dictionary with column names and values

        Returns:
            Tuple of (SQL statement, values list)
        """
        if not data:
            raise ValueError("Data cannot be empty")

        columns = list(data.keys())
        placeholders = ['%s'] * len(columns)

        insert_sql = f"""INSERT IGNORE INTO {quote_identifier(table_name)} ({', '.join(columns)})
VALUES ({', '.join(placeholders)})"""

        return insert_sql.strip(), list(data.values())

    @staticmethod
    def build_upsert_sql(table_name: str, data: Dict[str, Any],
                         primary_key: Union[str, Sequence[str]]) -> Tuple[str, List[Any]]:
        """
        Build UPSERT SQL statement (INSERT ... ON DUPLICATE KEY UPDATE)

        Args:
            table_name: Target table name
            data: Data dictionary with column names and values
            primary_key: Primary key column name, or names for a composite key

        Returns:
            Tuple of (SQL statement, values list)
        """
        if not data:
            raise ValueError("Data cannot be empty")

        key_columns = [primary_key] if isinstance(primary_key, str) else list(primary_key)
        columns = list(data.keys())
        placeholders = ['%s'] * len(columns)

        insert_sql = f"""INSERT INTO {quote_identifier(table_name)} ({', '.join(columns)})
VALUES ({', '.join(placeholders)})
ON DUPLICATE KEY UPDATE
"""

        update_parts = [f"{col} = VALUES({col})" for col in columns if col not in key_columns]
        if update_parts:
            insert_sql += ', '.join(update_parts)
        else:
            insert_sql += f"{key_columns[0]} = VALUES({key_columns[0]})"

        return insert_sql.strip(), list(data.values())

    @staticmethod
    def build_delete_sql(table_name: str, keys: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """
        Build DELETE SQL statement

        Args:
            table_name: Target table name
            keys: Column values identifying the rows to delete

        Returns:
            Tuple of (SQL statement, values list)
        """
        if not keys:
            raise ValueError("Delete keys cannot be empty")

        conditions = ' AND '.join(f"{col} = %s" for col in keys)
        return f"DELETE FROM {quote_identifier(table_name)} WHERE {conditions}", list(keys.values())

    @staticmethod
    def build_read_changelog_sql(table_name: str, limit: Optional[int] = None) -> str:
        """Select one source table's changelog tail after a sequence number, in append order"""
        sql = f"""SELECT _seq, {', '.join(CHANGELOG_COLUMNS[1:])}
FROM {quote_identifier(table_name)}
WHERE table_name = %s AND _seq > %s
ORDER BY _seq"""
        if limit is not None:
            sql += f"\nLIMIT {int(limit)}"
        return sql

    @staticmethod
    def build_select_sql(table_name: str, columns: Sequence[str], keys: Sequence[str],
                         for_update: bool = False) -> str:
        """
        Build SELECT statement filtered by equality on key columns

        Args:
            table_name: Source table name
            columns: Columns to select
            keys: Key columns, one %s placeholder each
            for_update: Lock matching rows until the transaction ends
        """
        conditions = ' AND '.join(f"{col} = %s" for col in keys)
        sql = f"SELECT {', '.join(columns)} FROM {quote_identifier(table_name)} WHERE {conditions}"
        if for_update:
            sql += " FOR UPDATE"
        return sql
