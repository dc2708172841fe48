"""Accessors for the site options table (option_name / option_value / autoload)."""

from typing import Any, Dict, Iterable, Optional

from stores.base_store import DatabaseStore, quote_identifier, validate_table_name

LIKE_ESCAPE = '!'


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so value matches literally."""
    for char in (LIKE_ESCAPE, '%', '_'):
        value = value.replace(char, LIKE_ESCAPE + char)
    return value


def get_option(store: DatabaseStore, table: str, name: str) -> Optional[str]:
    validate_table_name(table)
    rows = store.query(
        f"SELECT option_value FROM {quote_identifier(table)} WHERE option_name = {store.placeholder}",
        [name]
    )
    return rows[0]['option_value'] if rows else None


def get_options(store: DatabaseStore, table: str, names: Iterable[str]) -> Dict[str, Any]:
    """Return {name: value} for the names that exist."""
    names = list(names)
    if not names:
        return {}
    validate_table_name(table)
    markers = ', '.join([store.placeholder] * len(names))
    rows = store.query(
        f"SELECT option_name, option_value FROM {quote_identifier(table)} WHERE option_name IN ({markers})",
        names
    )
    return {row['option_name']: row['option_value'] for row in rows}


def set_option(store: DatabaseStore, table: str, name: str, value: Any, autoload: str = 'yes') -> bool:
    """
    Update an option, inserting it when missing.

    Returns:
        True if the option was inserted, False if an existing row was updated
    """
    validate_table_name(table)
    exists = store.query(
        f"SELECT option_name FROM {quote_identifier(table)} WHERE option_name = {store.placeholder}",
        [name]
    )
    if exists:
        store.update_row(table, {'option_value': value}, 'option_name', name)
        return False

    store.insert_row(table, {'option_name': name, 'option_value': value, 'autoload': autoload})
    return True


def delete_option(store: DatabaseStore, table: str, name: str) -> int:
    validate_table_name(table)
    return store.execute(
        f"DELETE FROM {quote_identifier(table)} WHERE option_name = {store.placeholder}",
        [name]
    )


def delete_options_with_prefix(store: DatabaseStore, table: str, prefix: str) -> int:
    """Delete options whose name starts with prefix (taken literally)."""
    validate_table_name(table)
    return store.execute(
        f"DELETE FROM {quote_identifier(table)} "
        f"WHERE option_name LIKE {store.placeholder} ESCAPE '{LIKE_ESCAPE}'",
        [escape_like(prefix) + '%']
    )


__all__ = [
    'escape_like',
    'get_option',
    'get_options',
    'set_option',
    'delete_option',
    'delete_options_with_prefix',
]
