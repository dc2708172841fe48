"""SQLite implementation of the relational store."""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence

from stores.base_store import (
    ColumnInfo,
    DatabaseStore,
    DuplicateKeyError,
    StoreError,
    validate_table_name,
)


class SQLiteStore(DatabaseStore):
    """SQLite store, used for local sites and for tests."""

    placeholder = '?'
    engine = 'sqlite'

    def __init__(self, database: str = ':memory:', timeout: float = 30.0,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize SQLite store.

        Args:
            database: Path to SQLite database file or ':memory:' for in-memory
            timeout: Busy timeout in seconds
            logger: Optional logger instance
        """
        super().__init__(logger or logging.getLogger('site_migrator.store.sqlite'))
        self.database = database
        self.timeout = timeout
        try:
            # Autocommit mode; transactions are opened explicitly
            self._connection = sqlite3.connect(
                database,
                timeout=timeout,
                isolation_level=None,
                check_same_thread=False
            )
        except sqlite3.Error as e:
            self.logger.error(f"Failed to connect to SQLite: {e}")
            raise StoreError(f"Cannot open SQLite database {database}", str(e))
        self._connection.row_factory = sqlite3.Row
        self.logger.debug(f"Connected to SQLite database: {database}")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            cursor = self._connection.execute(sql, tuple(params))
        except sqlite3.IntegrityError as e:
            message = str(e)
            if 'UNIQUE constraint failed' in message or 'PRIMARY KEY' in message:
                raise DuplicateKeyError(f"Duplicate entry: {message}", message)
            raise StoreError(f"Integrity error: {message}", message)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error: {e}", str(e))
        return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            cursor = self._connection.execute(sql, tuple(params))
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error: {e}", str(e))

    def list_tables(self, prefix: str = '') -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row['name'] for row in rows if row['name'].startswith(prefix)]

    def describe_columns(self, table: str) -> List[ColumnInfo]:
        validate_table_name(table)
        rows = self.query(f"PRAGMA table_info('{table}')")
        key_columns = [row for row in rows if row['pk']]

        columns = []
        for row in rows:
            column_type = row['type'] or ''
            # A lone INTEGER PRIMARY KEY aliases the rowid and is auto-assigned
            auto_increment = (
                bool(row['pk']) and len(key_columns) == 1
                and column_type.upper() == 'INTEGER'
            )
            columns.append(ColumnInfo(
                name=row['name'],
                type=column_type,
                primary_key=bool(row['pk']),
                auto_increment=auto_increment,
                key_position=int(row['pk'] or 0)
            ))
        return columns

    def show_create_table(self, table: str) -> Optional[str]:
        validate_table_name(table)
        rows = self.query(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,)
        )
        return rows[0]['sql'] if rows else None

    def _begin(self) -> None:
        self._connection.execute('BEGIN')

    def _commit(self) -> None:
        try:
            self._connection.execute('COMMIT')
        except sqlite3.Error as e:
            raise StoreError(f"SQLite commit failed: {e}", str(e))

    def _rollback(self) -> None:
        self._connection.execute('ROLLBACK')

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self.logger.debug("SQLite store closed")


__all__ = ['SQLiteStore']
