"""Source read service: manifest, database metadata, rows and file bytes."""

import datetime
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from models import DEFAULT_CHUNK_SIZE, __version__
from settings import Settings
from stores.base_store import DatabaseStore, validate_table_name
from transfer.archive import build_archive
from transfer.chunk_transport import read_chunk
from transfer.file_scanner import FileScanner, build_manifest
from transfer.row_pager import RowPager

MAX_CONNECTED_DESTINATIONS = 10


def origin_from_headers(origin: Optional[str], referer: Optional[str]) -> Optional[str]:
    """Return the Origin header, or scheme://host[:port] of the Referer."""
    if origin:
        return origin
    if not referer:
        return None

    parsed = urlparse(referer)
    if not parsed.scheme or not parsed.hostname:
        return None
    result = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        result += f":{parsed.port}"
    return result


class SourceService:
    """Answers the read operations a destination pulls during a migration."""

    def __init__(
        self,
        store: DatabaseStore,
        content_root: str,
        settings: Settings,
        site_url: str,
        home_url: Optional[str] = None,
        table_prefix: str = 'wp_',
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.content_root = content_root
        self.settings = settings
        self.site_url = site_url.rstrip('/')
        self.home_url = (home_url or site_url).rstrip('/')
        self.table_prefix = table_prefix
        self.logger = logger or logging.getLogger('site_migrator.source')
        self._pager = RowPager(store, settings.get('batch_size'), logger=self.logger)

    @property
    def chunk_size(self) -> int:
        return self.settings.get('chunk_size', DEFAULT_CHUNK_SIZE)

    def handshake(self, origin: Optional[str] = None) -> Dict[str, Any]:
        """Return capability info and remember the caller's origin."""
        if origin:
            self.record_origin(origin)

        return {
            'version': __version__,
            'site_url': self.home_url,
            'table_prefix': self.table_prefix,
            'engine': getattr(self.store, 'engine', 'unknown'),
            'timestamp': datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            'chunk_size': self.chunk_size,
            'batch_size': self.settings.get('batch_size')
        }

    def record_origin(self, origin: str) -> None:
        destinations: List[str] = self.settings.get('connected_destinations') or []
        if origin in destinations:
            return

        destinations.append(origin)
        destinations = destinations[-MAX_CONNECTED_DESTINATIONS:]
        self.settings.update('connected_destinations', destinations)
        self.logger.info(f"Recorded connected destination {origin}")

    def get_manifest(self, include_uploads: bool = True) -> Dict[str, Any]:
        scanner = FileScanner.from_settings(self.content_root, self.settings,
                                            batch_threshold=self.chunk_size, logger=self.logger)
        manifest = build_manifest(scanner, self.chunk_size, include_uploads=include_uploads)
        return manifest.to_dict()

    def get_database_info(self) -> Dict[str, Any]:
        tables = [
            {'name': name, 'rows': self.store.count_rows(name)}
            for name in self.store.list_tables(self.table_prefix)
        ]
        return {'tables': tables, 'total_tables': len(tables)}

    def _require_table(self, table: str) -> None:
        validate_table_name(table)
        if not self.store.table_exists(table):
            raise LookupError(f"Table not found: {table}")

    def get_table_schema(self, table: str) -> Dict[str, Any]:
        """
        Raises:
            ValueError: On an invalid table name
            LookupError: If the table or its schema is unknown
        """
        self._require_table(table)
        schema = self.store.show_create_table(table)
        if not schema:
            raise LookupError(f"Schema not found for table: {table}")
        return {'schema': schema}

    def get_rows(self, table: str, last_id: Any = None, offset: int = 0,
                 batch: Optional[int] = None) -> Dict[str, Any]:
        self._require_table(table)
        batch = Settings.validate('batch_size', batch) if batch else self.settings.get('batch_size')
        page = self._pager.fetch(table, last_id=last_id, offset=offset, batch=batch)
        return page.to_dict()

    def get_file_chunk(self, path: str, start: int = 0, end: int = 0) -> Dict[str, Any]:
        return read_chunk(self.content_root, path, start, end, self.chunk_size)

    def get_batch(self, paths: List[str]) -> Dict[str, Any]:
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ValueError("Invalid files parameter")
        return build_archive(self.content_root, paths)

    def get_source_info(self) -> Dict[str, Any]:
        return {
            'site_url': self.site_url,
            'home_url': self.home_url,
            'table_prefix': self.table_prefix
        }


__all__ = ['SourceService', 'origin_from_headers', 'MAX_CONNECTED_DESTINATIONS']
