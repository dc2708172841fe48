"""Keyset row pager with primary key detection and binary-safe wire encoding."""

import base64
import binascii
import datetime
import decimal
import logging
from typing import Any, Dict, Iterator, List, Optional

from models import RowBatch
from stores.base_store import ColumnInfo, DatabaseStore, quote_identifier, validate_table_name

BASE64_SUFFIX = '_base64'

# Conventional id-like column names, tried in this order
COMMON_KEY_NAMES = ['ID', 'id', 'option_id', 'user_id', 'term_id', 'comment_ID', 'post_id', 'link_id']


def detect_primary_key(columns: List[ColumnInfo]) -> Optional[str]:
    """
    Pick the column used as the keyset cursor.

    Order: declared primary key (first column of a composite key), then the
    first auto-increment column, then the first conventional id-like name
    present, else None. The fallbacks can pick an unrelated column when a
    table has several candidates; only the declared key is authoritative.
    """
    declared = sorted((c for c in columns if c.primary_key), key=lambda c: c.key_position or 0)
    if declared:
        return declared[0].name

    for column in columns:
        if column.auto_increment:
            return column.name

    names = {column.name for column in columns}
    for candidate in COMMON_KEY_NAMES:
        if candidate in names:
            return candidate

    return None


def _to_wire(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat(sep=' ') if isinstance(value, datetime.datetime) else value.isoformat()
    if isinstance(value, (decimal.Decimal, datetime.timedelta)):
        return str(value)
    return value


def encode_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Base64-encode binary values, adding a sibling '<column>_base64' marker."""
    encoded = {}
    for column, value in row.items():
        if isinstance(value, (bytes, bytearray, memoryview)):
            encoded[column] = base64.b64encode(bytes(value)).decode('ascii')
            encoded[column + BASE64_SUFFIX] = True
        else:
            encoded[column] = _to_wire(value)
    return encoded


def decode_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reverse encode_row.

    Raises:
        ValueError: If a marked column does not hold valid base64
    """
    markers = {
        key[:-len(BASE64_SUFFIX)] for key, value in row.items()
        if key.endswith(BASE64_SUFFIX) and value is True and key[:-len(BASE64_SUFFIX)] in row
    }

    decoded = {}
    for column, value in row.items():
        if column.endswith(BASE64_SUFFIX) and column[:-len(BASE64_SUFFIX)] in markers:
            continue
        if column in markers:
            try:
                decoded[column] = base64.b64decode(value, validate=True)
            except (binascii.Error, TypeError, ValueError):
                raise ValueError(f"Failed to decode base64 data for column: {column}")
        else:
            decoded[column] = value
    return decoded


class RowPager:
    """Pages a table by primary key cursor, falling back to OFFSET without a key.

    Offset pagination is unstable under concurrent writes (rows can be skipped
    or repeated); it is used only for tables with no detectable key.
    """

    def __init__(self, store: DatabaseStore, batch_size: int = 1000, logger: Optional[logging.Logger] = None):
        self.store = store
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger('site_migrator.transfer.pager')
        self._key_cache: Dict[str, Optional[str]] = {}

    def primary_key(self, table: str) -> Optional[str]:
        if table not in self._key_cache:
            self._key_cache[table] = detect_primary_key(self.store.describe_columns(table))
            if self._key_cache[table] is None:
                self.logger.warning(f"No usable key for {table}; using offset pagination")
        return self._key_cache[table]

    def fetch(self, table: str, last_id: Any = None, offset: int = 0, batch: Optional[int] = None,
              columns: Optional[List[str]] = None, encode: bool = True) -> RowBatch:
        """
        Fetch the next page of rows.

        Args:
            table: Table name
            last_id: Last primary key seen (None starts from the beginning)
            offset: Row offset, used only when the table has no key
            batch: Page size (defaults to the pager's batch size)
            columns: Optional column subset (the key column is always included)
            encode: Wire-encode binary values

        Returns:
            RowBatch; has_more is True when the page is full, so callers keep
            paging until a short page comes back
        """
        validate_table_name(table)
        batch = int(batch or self.batch_size)
        key = self.primary_key(table)
        p = self.store.placeholder

        if columns:
            selected = list(dict.fromkeys(([key] if key else []) + list(columns)))
            select_list = ', '.join(quote_identifier(c) for c in selected)
        else:
            select_list = '*'

        if key:
            quoted_key = quote_identifier(key)
            if last_id is not None:
                sql = (f"SELECT {select_list} FROM {quote_identifier(table)} WHERE {quoted_key} > {p} "
                       f"ORDER BY {quoted_key} ASC LIMIT {p}")
                params = [last_id, batch]
            else:
                sql = f"SELECT {select_list} FROM {quote_identifier(table)} ORDER BY {quoted_key} ASC LIMIT {p}"
                params = [batch]
        else:
            sql = f"SELECT {select_list} FROM {quote_identifier(table)} LIMIT {p} OFFSET {p}"
            params = [batch, int(offset or 0)]

        rows = self.store.query(sql, params)

        next_id = None
        if key and rows:
            next_id = _to_wire(rows[-1].get(key))

        if encode:
            rows = [encode_row(row) for row in rows]

        return RowBatch(
            table=table,
            rows=rows,
            next_id=next_id,
            has_more=len(rows) == batch,
            primary_key=key
        )

    def iter_batches(self, table: str, columns: Optional[List[str]] = None,
                     encode: bool = False) -> Iterator[RowBatch]:
        """Yield pages until a short page is returned."""
        last_id = None
        offset = 0
        while True:
            page = self.fetch(table, last_id=last_id, offset=offset, columns=columns, encode=encode)
            if page.rows:
                yield page
            if not page.has_more:
                break
            last_id = page.next_id
            offset += page.count


__all__ = [
    'RowPager',
    'detect_primary_key',
    'encode_row',
    'decode_row',
    'COMMON_KEY_NAMES',
    'BASE64_SUFFIX',
]
