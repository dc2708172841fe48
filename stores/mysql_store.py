"""MySQL/MariaDB implementation of the relational store."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import pymysql
import pymysql.cursors
from pymysql import IntegrityError, MySQLError

from stores.base_store import (
    ColumnInfo,
    DatabaseStore,
    DuplicateKeyError,
    StoreError,
    quote_identifier,
    validate_table_name,
)

# MySQL server error code for "Duplicate entry ... for key"
ER_DUP_ENTRY = 1062


class MySQLStore(DatabaseStore):
    """MySQL store backed by a single pymysql connection."""

    placeholder = '%s'
    engine = 'mysql'

    def __init__(
        self,
        host: str = 'localhost',
        port: int = 3306,
        user: str = 'root',
        password: str = '',
        database: str = '',
        charset: str = 'utf8mb4',
        connect_timeout: int = 10,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize MySQL store.

        Args:
            host: Server hostname
            port: Server port
            user: Database user
            password: Database password
            database: Schema name
            charset: Connection character set
            connect_timeout: Connection timeout in seconds
            logger: Optional logger instance
        """
        super().__init__(logger or logging.getLogger('site_migrator.store.mysql'))
        self.host = host
        self.database = database
        try:
            self._connection = pymysql.connect(
                host=host,
                port=int(port),
                user=user,
                password=password,
                database=database,
                charset=charset,
                connect_timeout=connect_timeout,
                cursorclass=pymysql.cursors.DictCursor,
                autocommit=True
            )
        except MySQLError as e:
            self.logger.error(f"Failed to connect to MySQL at {host}:{port}: {e}")
            raise StoreError(f"Cannot connect to MySQL at {host}:{port}", str(e))
        self.logger.info(f"Connected to MySQL database {database} at {host}:{port}")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            with self._connection.cursor() as cursor:
                return cursor.execute(sql, tuple(params) if params else None)
        except IntegrityError as e:
            if e.args and e.args[0] == ER_DUP_ENTRY:
                raise DuplicateKeyError(f"Duplicate entry: {e}", str(e))
            raise StoreError(f"Integrity error: {e}", str(e))
        except MySQLError as e:
            raise StoreError(f"MySQL error: {e}", str(e))

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, tuple(params) if params else None)
                return list(cursor.fetchall())
        except MySQLError as e:
            raise StoreError(f"MySQL error: {e}", str(e))

    def list_tables(self, prefix: str = '') -> List[str]:
        rows = self.query("SHOW TABLES")
        names = [next(iter(row.values())) for row in rows]
        return sorted(name for name in names if name.startswith(prefix))

    def describe_columns(self, table: str) -> List[ColumnInfo]:
        validate_table_name(table)
        columns = self.query(f"SHOW COLUMNS FROM {quote_identifier(table)}")
        key_rows = self.query(
            f"SHOW INDEX FROM {quote_identifier(table)} WHERE Key_name = 'PRIMARY'"
        )
        key_positions = {row['Column_name']: int(row['Seq_in_index']) for row in key_rows}

        return [
            ColumnInfo(
                name=column['Field'],
                type=column['Type'],
                primary_key=column['Field'] in key_positions,
                auto_increment='auto_increment' in (column.get('Extra') or '').lower(),
                key_position=key_positions.get(column['Field'], 0)
            )
            for column in columns
        ]

    def show_create_table(self, table: str) -> Optional[str]:
        validate_table_name(table)
        rows = self.query(f"SHOW CREATE TABLE {quote_identifier(table)}")
        if not rows:
            return None
        return rows[0].get('Create Table')

    def _begin(self) -> None:
        self._connection.begin()

    def _commit(self) -> None:
        self._connection.commit()

    def _rollback(self) -> None:
        self._connection.rollback()

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self.logger.info("MySQL store closed")


__all__ = ['MySQLStore']
