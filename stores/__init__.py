"""Relational store adapters for the source and destination databases."""

from .base_store import (
    ColumnInfo,
    DatabaseStore,
    DuplicateKeyError,
    StoreError,
    quote_identifier,
    validate_table_name,
)
from .sqlite_store import SQLiteStore


class StoreFactory:
    """Factory for creating store instances based on configuration."""

    @staticmethod
    def create_store(database_config: dict, logger=None) -> DatabaseStore:
        """Create the store named by a database config block.

        Args:
            database_config: Dictionary with 'engine' and connection settings
            logger: Logger instance

        Returns:
            DatabaseStore instance (SQLiteStore or MySQLStore)

        Raises:
            ValueError: If engine is invalid
        """
        engine = (database_config or {}).get('engine', 'sqlite')

        if engine == 'sqlite':
            return SQLiteStore(
                database=database_config.get('path', ':memory:'),
                timeout=database_config.get('timeout', 30.0),
                logger=logger
            )
        elif engine == 'mysql':
            # pymysql is only needed for MySQL sites
            from .mysql_store import MySQLStore
            return MySQLStore(
                host=database_config.get('host', 'localhost'),
                port=database_config.get('port', 3306),
                user=database_config.get('user', 'root'),
                password=database_config.get('password', ''),
                database=database_config.get('name', ''),
                charset=database_config.get('charset', 'utf8mb4'),
                logger=logger
            )
        else:
            raise ValueError(f"Invalid database engine: {engine}. Must be 'sqlite' or 'mysql'.")


__all__ = [
    'ColumnInfo',
    'DatabaseStore',
    'DuplicateKeyError',
    'StoreError',
    'SQLiteStore',
    'StoreFactory',
    'quote_identifier',
    'validate_table_name',
]
