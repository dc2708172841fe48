"""Abstract relational store interface shared by the source and destination sides."""

import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

TABLE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_]+$')


class StoreError(Exception):
    """Base exception for engine-level failures."""

    def __init__(self, message: str, engine_error: Optional[str] = None):
        super().__init__(message)
        self.engine_error = engine_error or message


class DuplicateKeyError(StoreError):
    """Insert rejected because the key already exists."""
    pass


@dataclass
class ColumnInfo:
    """Column metadata reported by the engine."""

    name: str
    type: str
    primary_key: bool = False
    auto_increment: bool = False
    # Position inside a composite primary key (1-based, 0 if not part of it)
    key_position: int = 0

    @property
    def is_text(self) -> bool:
        upper = self.type.upper()
        return 'CHAR' in upper or 'TEXT' in upper


def validate_table_name(name: str) -> str:
    """Reject anything that is not a plain identifier before it reaches SQL."""
    if not isinstance(name, str) or not TABLE_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Backtick-quote an identifier (accepted by both SQLite and MySQL)."""
    return '`' + str(name).replace('`', '``') + '`'


class DatabaseStore(ABC):
    """The relational engine as a capability: run SQL, stream rows, report schema."""

    #: Parameter marker used in prepared statements
    placeholder = '?'

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger('site_migrator.store')
        self._in_transaction = False

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        Execute a statement.

        Returns:
            Number of affected rows

        Raises:
            DuplicateKeyError: On primary/unique key conflicts
            StoreError: On any other engine error
        """

    @abstractmethod
    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a SELECT and return rows as dictionaries."""

    @abstractmethod
    def list_tables(self, prefix: str = '') -> List[str]:
        """List tables whose name starts with prefix, in stable name order."""

    @abstractmethod
    def describe_columns(self, table: str) -> List[ColumnInfo]:
        """Report column names, types and key flags for a table."""

    @abstractmethod
    def show_create_table(self, table: str) -> Optional[str]:
        """Return the verbatim CREATE TABLE statement, or None if unknown."""

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @contextmanager
    def transaction(self) -> Iterator['DatabaseStore']:
        """Commit on normal exit, roll back on exception."""
        if self._in_transaction:
            yield self
            return

        self._begin()
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self._rollback()
            raise
        else:
            self._in_transaction = False
            try:
                self._commit()
            except BaseException:
                self._rollback()
                raise

    def table_exists(self, table: str) -> bool:
        validate_table_name(table)
        return table in self.list_tables(table)

    def count_rows(self, table: str) -> int:
        validate_table_name(table)
        rows = self.query(f"SELECT COUNT(*) AS total FROM {quote_identifier(table)}")
        return int(rows[0]['total']) if rows else 0

    def column_names(self, table: str) -> List[str]:
        return [column.name for column in self.describe_columns(table)]

    def insert_row(self, table: str, row: Dict[str, Any]) -> bool:
        """
        Insert one row.

        Returns:
            True if inserted, False if the key already existed
        """
        validate_table_name(table)
        columns = list(row.keys())
        sql = (
            f"INSERT INTO {quote_identifier(table)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) "
            f"VALUES ({', '.join([self.placeholder] * len(columns))})"
        )
        try:
            self.execute(sql, [row[c] for c in columns])
        except DuplicateKeyError:
            return False
        return True

    def update_row(self, table: str, values: Dict[str, Any], key_column: str, key_value: Any) -> int:
        """Update columns of the row identified by key_column = key_value."""
        validate_table_name(table)
        assignments = ', '.join(f"{quote_identifier(c)} = {self.placeholder}" for c in values)
        sql = (
            f"UPDATE {quote_identifier(table)} SET {assignments} "
            f"WHERE {quote_identifier(key_column)} = {self.placeholder}"
        )
        return self.execute(sql, list(values.values()) + [key_value])

    def drop_table(self, table: str) -> None:
        validate_table_name(table)
        self.execute(f"DROP TABLE {quote_identifier(table)}")

    def truncate_table(self, table: str) -> None:
        validate_table_name(table)
        self.execute(f"DELETE FROM {quote_identifier(table)}")

    def __enter__(self) -> 'DatabaseStore':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = [
    'DatabaseStore',
    'ColumnInfo',
    'StoreError',
    'DuplicateKeyError',
    'validate_table_name',
    'quote_identifier',
    'TABLE_NAME_PATTERN',
]
