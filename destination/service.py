"""Destination write API: applies schema, rows, files and finalization steps."""

import base64
import logging
import re
from typing import Any, Dict, Optional

from destination.connection_key import build_connection_key, generate_secret, parse_connection_key
from destination.messages import (
    CreateTable,
    DropTable,
    ExtractBatch,
    FinalizeMigration,
    FlushCaches,
    GetDestinationConfig,
    LoadConnectionKey,
    PrepareDatabase,
    ProcessRows,
    RegenerateSecret,
    SaveConnectionKey,
    SearchReplace,
    SetMode,
    WriteChunk,
)
from destination.smart_merge import SmartMergePolicy, translate_table_name
from destination.transients import TransientStore
from errors import RowApplyFailure, SchemaApplyFailure
from models import ProtectedEntitySet, SiteMode
from serialization.rewriter import SerializationRewriter
from settings import Settings
from stores.base_store import DatabaseStore, StoreError, validate_table_name
from stores.options import delete_option, delete_options_with_prefix
from transfer.archive import ArchiveExtractor
from transfer.chunk_transport import FILE_MODE, ChunkWriter
from transfer.row_pager import decode_row

CACHE_OPTION_PREFIXES = ('_transient_', '_site_transient_')


def rewrite_schema(schema: str, source_table: str, new_table: str) -> str:
    """
    Rename a table inside a verbatim CREATE TABLE statement.

    Handles the CREATE TABLE clause, backtick-quoted references and bare
    whole-word references (for example in REFERENCES clauses).
    """
    pattern = re.compile(r'CREATE TABLE\s+(`?' + re.escape(source_table) + r'`?)', re.IGNORECASE)
    schema = pattern.sub(lambda _: f'CREATE TABLE `{new_table}`', schema)
    schema = schema.replace(f'`{source_table}`', f'`{new_table}`')
    schema = re.sub(r'\b' + re.escape(source_table) + r'\b', lambda _: new_table, schema)
    return schema.replace('``', '`')


class DestinationService:
    """Handles typed destination requests through a single dispatch()."""

    def __init__(
        self,
        store: DatabaseStore,
        settings: Settings,
        content_root: str,
        transients: TransientStore,
        site_url: str,
        home_url: Optional[str] = None,
        table_prefix: str = 'wp_',
        protected: Optional[ProtectedEntitySet] = None,
        file_mode: int = FILE_MODE,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize destination service.

        Args:
            store: Destination database
            settings: Settings holding mode, secret and saved connection key
            content_root: Root directory files are written under
            transients: Snapshot store used by Smart-Merge
            site_url: Destination site URL
            home_url: Destination home URL (defaults to site_url)
            table_prefix: Destination table prefix
            protected: Smart-Merge policy table (defaults from settings)
            file_mode: Permission applied to written files
            logger: Optional logger instance
        """
        self.store = store
        self.settings = settings
        self.content_root = content_root
        self.transients = transients
        self.site_url = site_url.rstrip('/')
        self.home_url = (home_url or site_url).rstrip('/')
        self.table_prefix = table_prefix
        self.logger = logger or logging.getLogger('site_migrator.destination')

        self.protected = protected or ProtectedEntitySet.from_settings(settings)
        self.smart_merge = SmartMergePolicy(store, table_prefix, transients, self.protected, logger=self.logger)
        self.chunk_writer = ChunkWriter(content_root, file_mode, logger=self.logger)
        self.extractor = ArchiveExtractor(content_root, file_mode, logger=self.logger)

        self._handlers = {
            SetMode: self._set_mode,
            RegenerateSecret: self._regenerate_secret,
            SaveConnectionKey: self._save_connection_key,
            LoadConnectionKey: self._load_connection_key,
            GetDestinationConfig: self._get_config,
            PrepareDatabase: self._prepare_database,
            CreateTable: self._create_table,
            DropTable: self._drop_table,
            ProcessRows: self._process_rows,
            WriteChunk: self._write_chunk,
            ExtractBatch: self._extract_batch,
            SearchReplace: self._search_replace,
            FlushCaches: self._flush_caches,
            FinalizeMigration: self._finalize,
        }

    @property
    def options_table(self) -> str:
        return f"{self.table_prefix}options"

    def dispatch(self, request: Any) -> Dict[str, Any]:
        """
        Route a request to its handler.

        Raises:
            TypeError: If the request is not one of the known request types
        """
        handler = self._handlers.get(type(request))
        if handler is None:
            raise TypeError(f"Unsupported destination request: {type(request).__name__}")
        return handler(request)

    # Site configuration

    def _set_mode(self, request: SetMode) -> Dict[str, Any]:
        valid = [mode.value for mode in SiteMode]
        if request.mode not in valid:
            raise ValueError(f"Invalid mode: {request.mode}. Must be one of {valid}")
        self.settings.update('mode', request.mode)
        self.logger.info(f"Site mode set to {request.mode}")
        return {'mode': request.mode}

    def _regenerate_secret(self, request: RegenerateSecret) -> Dict[str, Any]:
        secret = generate_secret()
        self.settings.update('migration_secret', secret)
        self.logger.info("Migration secret regenerated")
        return {'key': build_connection_key(self.home_url, secret)}

    def _save_connection_key(self, request: SaveConnectionKey) -> Dict[str, Any]:
        url, _ = parse_connection_key(request.key)
        encoded = base64.b64encode(request.key.strip().encode('utf-8')).decode('ascii')
        self.settings.update_all({'saved_source_key': encoded, 'source_url': url})
        self.logger.info(f"Saved connection key for {url}")
        return {'source_url': url}

    def _load_connection_key(self, request: LoadConnectionKey) -> Dict[str, Any]:
        encoded = self.settings.get('saved_source_key')
        if not encoded:
            return {'key': ''}
        return {'key': base64.b64decode(encoded).decode('utf-8')}

    def _get_config(self, request: GetDestinationConfig) -> Dict[str, Any]:
        return {
            'table_prefix': self.table_prefix,
            'home_url': self.home_url,
            'site_url': self.site_url
        }

    # Database

    def _prepare_database(self, request: PrepareDatabase) -> Dict[str, Any]:
        if not request.overwrite:
            return {'dropped': [], 'preserved': [], 'current_user_preserved': None, 'errors': []}
        return self.smart_merge.prepare(list(request.tables), request.source_prefix, request.current_user_id)

    def _create_table(self, request: CreateTable) -> Dict[str, Any]:
        if not request.schema or not request.source_table_name:
            raise ValueError("Schema and source table name are required")

        table = translate_table_name(request.source_table_name, request.source_prefix, self.table_prefix)
        validate_table_name(table)

        result = {'table': table, 'source_table': request.source_table_name, 'skipped': False}

        if self.store.table_exists(table):
            if self.smart_merge.is_preserved_table(table):
                self.logger.info(f"Keeping existing preserved table {table}")
                result['skipped'] = True
                return result
            # Left over from an attempt interrupted before its first batch was saved
            self.logger.info(f"Replacing existing table {table}")
            self.store.drop_table(table)

        schema = rewrite_schema(request.schema, request.source_table_name, table)
        try:
            self.store.execute(schema)
        except StoreError as e:
            self.logger.error(f"CREATE TABLE failed for {table}: {e.engine_error}")
            raise SchemaApplyFailure(table, e.engine_error)

        self.logger.debug(f"Created table {table} from {request.source_table_name}")
        return result

    def _drop_table(self, request: DropTable) -> Dict[str, Any]:
        validate_table_name(request.table)
        if not self.store.table_exists(request.table):
            raise ValueError(f"Table does not exist: {request.table}")
        self.store.drop_table(request.table)
        return {'table': request.table}

    def _process_rows(self, request: ProcessRows) -> Dict[str, Any]:
        """
        Insert one batch inside a transaction.

        A row that fails to decode or insert is skipped and reported; a
        duplicate key counts as a duplicate. A failure of the transaction
        itself rolls the batch back and the batch is retried once.

        Raises:
            RowApplyFailure: If the batch fails again on retry
        """
        table = translate_table_name(request.table, request.source_prefix, self.table_prefix)
        validate_table_name(table)

        last_error = None
        for attempt in range(2):
            try:
                with self.store.transaction():
                    result = self._apply_rows(table, request.rows)
            except StoreError as e:
                last_error = e
                self.logger.warning(f"Batch for {table} rolled back (attempt {attempt + 1}): {e.engine_error}")
                continue
            result['retried'] = attempt > 0
            return result

        raise RowApplyFailure(
            table, f"Transaction failed: {last_error.engine_error}", {'rows': len(request.rows)}
        )

    def _apply_rows(self, table: str, rows) -> Dict[str, Any]:
        result = {'table': table, 'inserted': 0, 'duplicates': 0, 'errors': []}

        for row in rows:
            try:
                clean_row = decode_row(row)
            except ValueError as e:
                self.logger.error(f"Skipping row in {table}: {e}")
                result['errors'].append(str(e))
                continue

            try:
                inserted = self.store.insert_row(table, clean_row)
            except StoreError as e:
                self.logger.error(f"Insert failed in {table}: {e.engine_error}")
                result['errors'].append(e.engine_error)
                continue

            if inserted:
                result['inserted'] += 1
            else:
                result['duplicates'] += 1

        return result

    # Files

    def _write_chunk(self, request: WriteChunk) -> Dict[str, Any]:
        written = self.chunk_writer.write_chunk(request.path, request.offset, request.data, request.checksum)
        return {'path': request.path, 'bytes_written': written}

    def _extract_batch(self, request: ExtractBatch) -> Dict[str, Any]:
        return self.extractor.extract(request.data, request.checksum)

    # Finalization

    def _search_replace(self, request: SearchReplace) -> Dict[str, Any]:
        source_url = request.source_url or self.settings.get('source_url')
        destination_url = request.destination_url or self.home_url
        if not source_url:
            raise ValueError("Source URL not configured")

        rewriter = SerializationRewriter(
            self.store, self.table_prefix, self.settings.get('batch_size'), logger=self.logger
        )
        stats = rewriter.replace(source_url, destination_url)
        rewriter.update_site_options(destination_url)
        return stats

    def _flush_caches(self, request: FlushCaches) -> Dict[str, Any]:
        result = {'options_deleted': 0, 'transients_purged': 0}

        if self.store.table_exists(self.options_table):
            for prefix in CACHE_OPTION_PREFIXES:
                result['options_deleted'] += delete_options_with_prefix(self.store, self.options_table, prefix)
            result['options_deleted'] += delete_option(self.store, self.options_table, 'rewrite_rules')

        result['transients_purged'] = self.transients.purge_expired()
        self.logger.info(f"Flushed caches: {result['options_deleted']} cached options removed")
        return result

    def _finalize(self, request: FinalizeMigration) -> Dict[str, Any]:
        result = self.smart_merge.restore()
        result['message'] = "Migration finalized. Preserved settings restored."
        return result


__all__ = ['DestinationService', 'rewrite_schema']
