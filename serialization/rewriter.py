"""URL search-and-replace that keeps serialized values intact."""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from serialization.php_serializer import PHPObject, SerializationError, dumps, is_serialized, loads
from stores.base_store import DatabaseStore, StoreError
from stores.options import set_option
from transfer.row_pager import RowPager, detect_primary_key

# Tables (without prefix) known to carry user-facing URLs and content
TABLES_TO_SCAN = ['options', 'postmeta', 'commentmeta', 'termmeta', 'usermeta', 'posts', 'comments']

# Serialized strings nested inside serialized strings deeper than this are left as they are
MAX_NESTING = 32

logger = logging.getLogger('site_migrator.serialization')

Substitutions = List[Tuple[str, str]]


def _variant(url: str, scheme: str) -> str:
    if scheme == 'http':
        return url.replace('https://', 'http://')
    return url.replace('http://', 'https://')


def build_substitutions(source_url: str, destination_url: str) -> Substitutions:
    """
    Build (search, replace) pairs for the URL and its variants.

    Covers the bare URL, with trailing slash, and the http/https forms of
    each. Pairs are ordered by descending search length so a longer URL
    containing a shorter one is matched first.
    """
    source = (source_url or '').rstrip('/')
    destination = (destination_url or '').rstrip('/')
    if not source:
        return []

    candidates = [
        (source, destination),
        (source + '/', destination + '/'),
        (_variant(source, 'http'), _variant(destination, 'http')),
        (_variant(source, 'http') + '/', _variant(destination, 'http') + '/'),
        (_variant(source, 'https'), _variant(destination, 'https')),
        (_variant(source, 'https') + '/', _variant(destination, 'https') + '/'),
    ]

    pairs: Substitutions = []
    seen = set()
    for search, replace in candidates:
        if search in seen:
            continue
        seen.add(search)
        pairs.append((search, replace))

    return sorted(pairs, key=lambda pair: len(pair[0]), reverse=True)


def simple_replace(value: str, substitutions: Substitutions) -> str:
    """Replace every search string in a single left-to-right pass, longest first."""
    if not substitutions or not value:
        return value

    lookup = dict(substitutions)
    pattern = re.compile('|'.join(re.escape(search) for search, _ in substitutions))
    return pattern.sub(lambda match: lookup[match.group(0)], value)


def _rewrite_tree(tree: Any, replace_leaf: Callable[[str], str]) -> bool:
    """
    Rewrite string leaves of a decoded tree in place.

    Uses an explicit worklist with a visited set, so deep or cyclic input
    cannot exhaust the interpreter stack.

    Returns:
        True if any leaf changed
    """
    changed = False
    worklist = [tree]
    visited = set()

    while worklist:
        node = worklist.pop()
        if id(node) in visited:
            continue
        visited.add(id(node))

        members = node.properties if isinstance(node, PHPObject) else node
        for key, item in members.items():
            if isinstance(item, str):
                new_item = replace_leaf(item)
                if new_item != item:
                    members[key] = new_item
                    changed = True
            elif isinstance(item, (dict, PHPObject)):
                worklist.append(item)

    return changed


def rewrite_value(value: str, substitutions: Substitutions, depth: int = 0) -> str:
    """
    Apply substitutions to one column value.

    Serialized values are decoded, their string leaves rewritten (recursing
    into leaves that are serialized themselves), and re-encoded with fresh
    length counters. A value that fails to decode is treated as plain text.
    Serialized text nested past MAX_NESTING levels is returned unchanged.
    The original string is returned untouched when nothing matched.
    """
    if not substitutions or not isinstance(value, str) or not value:
        return value

    if not is_serialized(value):
        return simple_replace(value, substitutions)

    if depth >= MAX_NESTING:
        logger.warning(f"Serialized value nested more than {MAX_NESTING} levels deep left unchanged")
        return value

    try:
        tree = loads(value)
    except SerializationError:
        return simple_replace(value, substitutions)

    def replace_leaf(leaf: str) -> str:
        return rewrite_value(leaf, substitutions, depth + 1)

    if isinstance(tree, str):
        new_leaf = replace_leaf(tree)
        return dumps(new_leaf) if new_leaf != tree else value

    if isinstance(tree, (dict, PHPObject)) and _rewrite_tree(tree, replace_leaf):
        return dumps(tree)

    return value


class SerializationRewriter:
    """Rewrites URLs across the content tables of the destination database."""

    def __init__(self, store: DatabaseStore, table_prefix: str, batch_size: int = 1000,
                 tables: Optional[List[str]] = None, logger: Optional[logging.Logger] = None):
        self.store = store
        self.table_prefix = table_prefix
        self.batch_size = batch_size
        self.tables = list(tables or TABLES_TO_SCAN)
        self.logger = logger or logging.getLogger('site_migrator.serialization')
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'tables_processed': 0,
            'rows_processed': 0,
            'rows_changed': 0,
            'errors': []
        }

    def replace(self, source_url: str, destination_url: str) -> Dict[str, Any]:
        """
        Replace source URLs with destination URLs in every scanned table.

        Tables missing at the destination are skipped. A row whose update
        fails is logged and skipped.

        Returns:
            Stats dict with tables_processed, rows_processed, rows_changed, errors
        """
        self.stats = self._empty_stats()
        substitutions = build_substitutions(source_url, destination_url)
        if not substitutions:
            self.logger.warning("Search-replace skipped: no source URL")
            return self.stats

        self.logger.info(f"Replacing {source_url} -> {destination_url} ({len(substitutions)} patterns)")

        for name in self.tables:
            table = f"{self.table_prefix}{name}"
            if not self.store.table_exists(table):
                self.logger.debug(f"Skipping missing table {table}")
                continue
            self._process_table(table, substitutions)
            self.stats['tables_processed'] += 1

        self.logger.info(
            f"Search-replace done: {self.stats['tables_processed']} tables, "
            f"{self.stats['rows_processed']} rows, {self.stats['rows_changed']} changed, "
            f"{len(self.stats['errors'])} errors"
        )
        return self.stats

    def _process_table(self, table: str, substitutions: Substitutions) -> None:
        columns = self.store.describe_columns(table)
        key = detect_primary_key(columns)
        if key is None:
            self._record_error(table, None, "No primary key; rows cannot be updated")
            return

        text_columns = [c.name for c in columns if c.is_text and c.name != key]
        if not text_columns:
            return

        pager = RowPager(self.store, self.batch_size, logger=self.logger)
        for page in pager.iter_batches(table, columns=text_columns):
            for row in page.rows:
                self._process_row(table, key, row, text_columns, substitutions)
                self.stats['rows_processed'] += 1

    def _process_row(self, table: str, key: str, row: Dict[str, Any],
                     text_columns: List[str], substitutions: Substitutions) -> None:
        changes = {}
        for column in text_columns:
            value = row.get(column)
            if not value or not isinstance(value, str):
                continue
            new_value = rewrite_value(value, substitutions)
            if new_value != value:
                changes[column] = new_value

        if not changes:
            return

        try:
            self.store.update_row(table, changes, key, row[key])
        except StoreError as e:
            self._record_error(table, row[key], e.engine_error)
            return
        self.stats['rows_changed'] += 1

    def _record_error(self, table: str, key_value: Any, message: str) -> None:
        self.logger.error(f"Search-replace error in {table} (key {key_value}): {message}")
        self.stats['errors'].append({'table': table, 'key': key_value, 'error': message})

    def update_site_options(self, url: str) -> None:
        """Point siteurl and home at the given URL."""
        table = f"{self.table_prefix}options"
        if not self.store.table_exists(table):
            self.logger.warning(f"Cannot update site URL: {table} does not exist")
            return
        for name in ('siteurl', 'home'):
            set_option(self.store, table, name, url)
        self.logger.info(f"Updated siteurl and home to {url}")


__all__ = [
    'SerializationRewriter',
    'build_substitutions',
    'simple_replace',
    'rewrite_value',
    'TABLES_TO_SCAN',
]
