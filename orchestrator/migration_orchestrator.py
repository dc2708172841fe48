"""
Migration orchestrator for driving a resumable pull migration.

This module provides the single driver that sequences all migration phases:
Scan → Database Transfer → File Transfer → Finalize. Every phase transition
and every completed unit of work is checkpointed, so an interrupted session
re-enters the exact phase (and cursor) it left.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm

from destination.messages import (
    CreateTable,
    ExtractBatch,
    FinalizeMigration,
    FlushCaches,
    PrepareDatabase,
    ProcessRows,
    SearchReplace,
    WriteChunk,
)
from destination.migration_lock import MigrationLock
from destination.service import DestinationService
from destination.smart_merge import translate_table_name
from errors import (
    ChecksumMismatch,
    ErrorCode,
    MigrationError,
    PathViolation,
    RowApplyFailure,
    SourceRequestError,
)
from integrity_verifier import IntegrityVerifier
from logger import ProgressTracker, log_section
from models import (
    DEFAULT_CHUNK_SIZE,
    Chunk,
    FileManifest,
    FileManifestEntry,
    MigrationPhase,
    MigrationSession,
    RowBatch,
    TableDescriptor,
)
from orchestrator.migration_control import MigrationControl
from orchestrator.migration_report import MigrationReport
from orchestrator.session_store import SessionStore
from source_client import SourceClient
from transfer.file_scanner import create_batches

logger = logging.getLogger('site_migrator.orchestrator')

PHASE_SEQUENCE = [
    MigrationPhase.SCANNING,
    MigrationPhase.TRANSFERRING_DATABASE,
    MigrationPhase.TRANSFERRING_FILES,
    MigrationPhase.FINALIZING,
]

# Failures that affect one file; continue_on_file_error decides what happens next
FILE_LEVEL_ERRORS = (ChecksumMismatch, PathViolation, SourceRequestError, OSError)


def cancel_saved_session(session_store: SessionStore, lock: MigrationLock,
                         logger: Optional[logging.Logger] = None) -> Optional[MigrationSession]:
    """Mark a paused or interrupted saved session as cancelled, keeping its cursor for inspection."""
    logger = logger or logging.getLogger('site_migrator.orchestrator')
    session = session_store.load()
    if session is None or session.phase.terminal:
        return session

    session.transition(MigrationPhase.CANCELLED)
    session.stats.end_time = time.time()
    session_store.save(session)
    lock.release(session.session_id)
    logger.info(f"Session {session.session_id} cancelled")
    return session


class MigrationOrchestrator:
    """Drives one MigrationSession through its phases against a source and a destination."""

    def __init__(
        self,
        source: SourceClient,
        destination: DestinationService,
        session_store: SessionStore,
        lock: MigrationLock,
        control: Optional[MigrationControl] = None,
        config: Optional[Dict[str, Any]] = None,
        current_user_id: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize migration orchestrator.

        Args:
            source: Client for the source read API
            destination: Destination write service
            session_store: Persistence for the resumable session
            lock: Destination-wide mutual exclusion lock
            control: Pause/cancel token (a private one is created if omitted)
            config: Configuration dictionary (migration and advanced sections)
            current_user_id: Destination operator account kept through Smart-Merge
            logger: Optional logger instance
        """
        self.source = source
        self.destination = destination
        self.session_store = session_store
        self.lock = lock
        self.control = control or MigrationControl()
        self.config = config or {}
        self.current_user_id = current_user_id
        self.logger = logger or logging.getLogger('site_migrator.orchestrator')

        migration_config = self.config.get('migration', {}) or {}
        advanced_config = self.config.get('advanced', {}) or {}

        self.include_uploads = migration_config.get('include_uploads', True)
        self.continue_on_file_error = migration_config.get('continue_on_file_error', True)
        self.progress_save_interval = max(1, migration_config.get('progress_save_interval', 10))
        self.max_files_per_batch = max(1, migration_config.get('max_files_per_batch', 100))
        self.show_progress = migration_config.get('show_progress', True)
        self.chunk_max_retries = advanced_config.get('chunk_max_retries', getattr(source, 'chunk_max_retries', 3))

        self.chunk_size = destination.settings.get('chunk_size', DEFAULT_CHUNK_SIZE)
        self.batch_size = destination.settings.get('batch_size')

        self.integrity_verifier = IntegrityVerifier(self.config, destination.content_root, self.logger)
        self.verify_integrity = self.integrity_verifier.enabled
        self.report_generator = MigrationReport(self.logger)
        self.phase_stats: Dict[str, Any] = {}
        self.failed_files: List[str] = []
        self._retry_base = 0
        self._local_retries = 0
        self._files_since_save = 0

        self._phase_handlers: Dict[MigrationPhase, Callable[[MigrationSession], bool]] = {
            MigrationPhase.SCANNING: self._execute_scan,
            MigrationPhase.TRANSFERRING_DATABASE: self._execute_database_transfer,
            MigrationPhase.TRANSFERRING_FILES: self._execute_file_transfer,
            MigrationPhase.FINALIZING: self._execute_finalize,
        }

        self.logger.info(
            f"MigrationOrchestrator initialized: include_uploads={self.include_uploads}, "
            f"continue_on_file_error={self.continue_on_file_error}, verify_integrity={self.verify_integrity}"
        )

    # Session lifecycle

    def load_session(self, resume: bool = True) -> MigrationSession:
        """Return the saved resumable session, or a fresh one."""
        saved = self.session_store.load()
        if saved is not None and resume and saved.can_resume and not saved.phase.terminal:
            self.logger.info(
                f"Resuming session {saved.session_id} from {saved.phase.value} "
                f"(table {saved.database_cursor.current_table}/{saved.total_tables}, "
                f"{len(saved.file_cursor.completed_files)}/{saved.total_files} files)"
            )
            return saved

        if saved is not None and not saved.phase.terminal and saved.phase != MigrationPhase.IDLE:
            self.logger.warning(f"Discarding resumable session {saved.session_id} ({saved.phase.value})")
        return MigrationSession()

    @staticmethod
    def entry_phase(session: MigrationSession) -> MigrationPhase:
        """Phase a run starts in for this session."""
        if session.phase in (MigrationPhase.PAUSED, MigrationPhase.ERROR):
            phase = session.resume_phase or MigrationPhase.SCANNING
        else:
            phase = session.phase

        if phase == MigrationPhase.IDLE:
            return MigrationPhase.SCANNING
        if phase == MigrationPhase.SCAN_COMPLETE:
            return MigrationPhase.TRANSFERRING_DATABASE
        return phase

    def run(self, resume: bool = True, dry_run: bool = False) -> Dict[str, Any]:
        """
        Run (or resume) a migration until it completes, pauses, fails or is cancelled.

        Args:
            resume: Continue a saved resumable session if one exists
            dry_run: Scan only and report what would be transferred

        Returns:
            Migration report dictionary

        Raises:
            ConcurrencyConflict: If another session holds the destination lock
        """
        if dry_run:
            return self._dry_run()

        session = self.load_session(resume)
        self.lock.acquire(session.session_id)

        start_time = time.time()
        if session.stats.start_time is None:
            session.stats.start_time = start_time
        self._retry_base = session.stats.retries
        self.phase_stats = {}
        self.failed_files = []

        start_phase = self.entry_phase(session)
        pending = PHASE_SEQUENCE[PHASE_SEQUENCE.index(start_phase):]

        try:
            for phase in pending:
                session.transition(phase)
                self._checkpoint(session)

                if not self._phase_handlers[phase](session):
                    return self._stop(session, start_time)

                if phase == MigrationPhase.SCANNING:
                    session.transition(MigrationPhase.SCAN_COMPLETE)
                    self._checkpoint(session)

            session.stats.end_time = time.time()
            session.last_error = None
            session.transition(MigrationPhase.COMPLETE)
            self._save(session)
            self.lock.release(session.session_id)
            self.session_store.clear()
            self.logger.info(f"Migration complete in {time.time() - start_time:.2f}s")

        except Exception as e:
            self._fail(session, e)

        return self._generate_report(session, time.time() - start_time)

    def _stop(self, session: MigrationSession, start_time: float) -> Dict[str, Any]:
        if self.control.cancel_requested:
            stopped_in = session.phase.value
            session.transition(MigrationPhase.CANCELLED)
            session.stats.end_time = time.time()
            self.logger.warning(f"Migration cancelled during {stopped_in}")
        else:
            session.transition(MigrationPhase.PAUSED)
            self.logger.warning(f"Migration paused; resume to continue from {session.resume_phase.value}")

        self._save(session)
        self.lock.release(session.session_id)
        return self._generate_report(session, time.time() - start_time)

    def _fail(self, session: MigrationSession, error: Exception) -> None:
        if isinstance(error, MigrationError):
            details = error.to_dict()
        else:
            details = {'code': ErrorCode.UNKNOWN.value, 'message': str(error), 'details': {}}

        self.logger.error(f"Migration failed during {session.phase.value}: {details['message']}", exc_info=True)
        session.stats.record_error(session.phase.value, details['code'], details['message'], details['details'])
        session.last_error = details
        session.transition(MigrationPhase.ERROR)
        self._save(session)
        self.lock.release(session.session_id)

    def _save(self, session: MigrationSession) -> None:
        session.stats.retries = self._retry_base + getattr(self.source, 'retry_count', 0) + self._local_retries
        self.session_store.save(session)

    def _checkpoint(self, session: MigrationSession) -> None:
        """Persist progress and extend the lock after a unit of work."""
        self._save(session)
        self.lock.refresh(session.session_id)

    # Phase 1: Scan

    def _scan_source(self, session: MigrationSession) -> Dict[str, Any]:
        handshake = self.source.handshake()
        info = self.source.get_source_info()

        session.source_url = (info.get('home_url') or info.get('site_url') or self.source.base_url).rstrip('/')
        session.table_prefix_source = info.get('table_prefix') or handshake.get('table_prefix', 'wp_')
        session.table_prefix_dest = self.destination.table_prefix
        if handshake.get('chunk_size'):
            self.chunk_size = int(handshake['chunk_size'])

        manifest = FileManifest.from_dict(self.source.get_manifest(self.include_uploads))
        session.manifest = manifest
        session.total_files = manifest.total_count

        self._load_tables(session)

        return {
            'source_version': handshake.get('version'),
            'source_url': session.source_url,
            'tables': session.total_tables,
            'rows': sum(table.rows for table in session.tables),
            'files': manifest.total_count,
            'total_size': manifest.total_size,
            'large_files': manifest.large_files,
            'small_files': manifest.small_files,
        }

    def _load_tables(self, session: MigrationSession) -> None:
        database = self.source.get_database_info()
        session.tables = [
            TableDescriptor(
                name=item['name'],
                rows=int(item.get('rows', 0)),
                destination_name=translate_table_name(
                    item['name'], session.table_prefix_source, session.table_prefix_dest
                )
            )
            for item in database.get('tables', [])
        ]
        session.total_tables = len(session.tables)

    def _execute_scan(self, session: MigrationSession) -> bool:
        log_section("Phase 1: Scan")
        stats = self._scan_source(session)
        self.phase_stats['scan'] = stats
        self.logger.info(
            f"Phase 1 complete: {stats['tables']} tables ({stats['rows']} rows), "
            f"{stats['files']} files ({stats['large_files']} large)"
        )
        return True

    def _dry_run(self) -> Dict[str, Any]:
        log_section("Dry Run: Scan Only")
        start_time = time.time()
        session = MigrationSession()
        self.phase_stats = {'scan': self._scan_source(session)}
        self.phase_stats['scan']['table_list'] = [table.to_dict() for table in session.tables]
        self.phase_stats['scan']['batches'] = len(
            create_batches(session.manifest, self.chunk_size, self.max_files_per_batch)
        )
        report = self._generate_report(session, time.time() - start_time)
        report['dry_run'] = True
        return report

    def _ensure_tables(self, session: MigrationSession) -> None:
        # Table lists are not persisted; re-fetch after a resume
        if not session.tables:
            self.logger.info("Re-fetching table list from source")
            if not session.table_prefix_dest:
                session.table_prefix_dest = self.destination.table_prefix
            self._load_tables(session)

    def _ensure_manifest(self, session: MigrationSession) -> FileManifest:
        if session.manifest is None:
            self.logger.info("Re-fetching file manifest from source")
            session.manifest = FileManifest.from_dict(self.source.get_manifest(self.include_uploads))
            session.total_files = session.manifest.total_count
        return session.manifest

    # Phase 2: Database

    def _execute_database_transfer(self, session: MigrationSession) -> bool:
        log_section("Phase 2: Database Transfer")
        self._ensure_tables(session)

        cursor = session.database_cursor
        tables = session.tables
        stats = {'tables_completed': 0, 'rows_inserted': 0, 'rows_duplicate': 0, 'row_errors': 0, 'prepare': None}
        self.phase_stats['database'] = stats

        if cursor.current_table == 0 and not cursor.mid_table:
            prepare = self.destination.dispatch(PrepareDatabase(
                tables=tuple(table.name for table in tables),
                source_prefix=session.table_prefix_source,
                overwrite=True,
                current_user_id=self.current_user_id
            ))
            stats['prepare'] = prepare
            for message in prepare.get('errors', []):
                session.stats.record_error(session.phase.value, ErrorCode.SCHEMA_APPLY_FAILURE.value, message)
            self._checkpoint(session)
        else:
            self.logger.info(f"Resuming at table {cursor.current_table + 1}/{len(tables)}; skipping prepare")

        remaining = len(tables) - cursor.current_table
        with ProgressTracker(total_items=remaining, item_type='tables') as tracker:
            while cursor.current_table < len(tables):
                if self.control.should_stop():
                    return False

                table = tables[cursor.current_table]
                errors_before = session.stats.errors
                if not self._transfer_table(session, table, stats):
                    return False

                tracker.increment(success=session.stats.errors == errors_before)
                stats['tables_completed'] += 1
                cursor.current_table += 1
                cursor.reset_table()
                self._checkpoint(session)

        self.logger.info(
            f"Phase 2 complete: {stats['tables_completed']} tables, {stats['rows_inserted']} rows inserted, "
            f"{stats['rows_duplicate']} duplicates, {stats['row_errors']} row errors"
        )
        return True

    def _transfer_table(self, session: MigrationSession, table: TableDescriptor, stats: Dict[str, Any]) -> bool:
        """
        Transfer one table, starting from the saved cursor.

        Returns:
            False if a pause or cancel was requested before the table finished
        """
        cursor = session.database_cursor

        if cursor.mid_table:
            self.logger.info(f"Resuming {table.name} after {cursor.table_offset} rows (last id {cursor.last_table_id})")
        else:
            schema = self.source.get_table_schema(table.name)['schema']
            self.destination.dispatch(CreateTable(schema, table.name, session.table_prefix_source))

        while True:
            page = RowBatch.from_dict(table.name, self.source.get_rows(
                table.name, last_id=cursor.last_table_id, offset=cursor.table_offset, batch=self.batch_size
            ))

            if page.rows:
                self._apply_rows(session, table, page, stats)

            cursor.table_offset += page.count
            if page.primary_key and page.count:
                cursor.last_table_id = page.next_id
            self._checkpoint(session)

            if not page.has_more or not page.count:
                self.logger.debug(f"Finished {table.name}: {cursor.table_offset} rows")
                return True
            if self.control.should_stop():
                return False

    def _apply_rows(self, session: MigrationSession, table: TableDescriptor, page: RowBatch,
                    stats: Dict[str, Any]) -> None:
        phase = session.phase.value
        try:
            result = self.destination.dispatch(ProcessRows(table.name, tuple(page.rows), session.table_prefix_source))
        except RowApplyFailure as e:
            self.logger.error(f"Batch of {page.count} rows for {table.name} failed: {e.message}")
            stats['row_errors'] += page.count
            session.stats.record_error(phase, e.code.value, e.message, e.details)
            return

        stats['rows_inserted'] += result['inserted']
        stats['rows_duplicate'] += result['duplicates']
        session.stats.rows_transferred += result['inserted']

        for message in result['errors']:
            stats['row_errors'] += 1
            session.stats.record_error(phase, ErrorCode.ROW_APPLY_FAILURE.value, message, {'table': table.name})

    # Phase 3: Files

    def _execute_file_transfer(self, session: MigrationSession) -> bool:
        log_section("Phase 3: File Transfer")
        manifest = self._ensure_manifest(session)
        cursor = session.file_cursor

        stats = {'files_transferred': 0, 'files_failed': 0, 'files_skipped': 0, 'chunks': 0, 'batches': 0}
        self.phase_stats['files'] = stats

        large = manifest.large_entries()
        pending_small = FileManifest()
        for entry in manifest.small_entries():
            if entry.path not in cursor.completed_files:
                pending_small.add(entry)
        batches = create_batches(pending_small, self.chunk_size, self.max_files_per_batch)

        remaining = sum(1 for entry in manifest.files if entry.path not in cursor.completed_files)
        stats['files_skipped'] = manifest.total_count - remaining
        self.logger.info(
            f"{remaining} files to transfer ({stats['files_skipped']} already complete): "
            f"{len(large)} large, {len(batches)} batches"
        )

        with tqdm(total=remaining, desc="Transferring files", unit="file", disable=not self.show_progress) as pbar:
            for index, entry in enumerate(large):
                if entry.path in cursor.completed_files:
                    continue
                if self.control.should_stop():
                    self._save(session)
                    return False

                try:
                    if not self._transfer_large_file(session, entry, index, stats):
                        self._save(session)
                        return False
                except FILE_LEVEL_ERRORS as e:
                    self._file_failed(session, entry.path, e, stats)
                    cursor.byte_offset = 0
                pbar.update(1)
                self._file_done(session)

            for paths in batches:
                if self.control.should_stop():
                    self._save(session)
                    return False

                try:
                    self._transfer_batch(session, paths, stats)
                except FILE_LEVEL_ERRORS as e:
                    for path in paths:
                        self._file_failed(session, path, e, stats)
                pbar.update(len(paths))
                self._file_done(session, len(paths))

        self._checkpoint(session)
        self.logger.info(
            f"Phase 3 complete: {stats['files_transferred']} files transferred, "
            f"{stats['files_failed']} failed, {stats['files_skipped']} skipped"
        )
        return True

    def _file_done(self, session: MigrationSession, count: int = 1) -> None:
        self._files_since_save += count
        self.lock.refresh(session.session_id)
        if self._files_since_save >= self.progress_save_interval:
            self._files_since_save = 0
            self._save(session)

    def _file_failed(self, session: MigrationSession, path: str, error: Exception, stats: Dict[str, Any]) -> None:
        if isinstance(error, MigrationError):
            code, message = error.code.value, error.message
        else:
            code, message = ErrorCode.UNKNOWN.value, str(error)

        self.logger.error(f"File transfer failed for {path}: {message}")
        stats['files_failed'] += 1
        self.failed_files.append(path)
        session.stats.record_error(session.phase.value, code, message, {'path': path})

        if not self.continue_on_file_error:
            raise error

    def _with_checksum_retry(self, description: str, attempt: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        """Re-request a payload whose checksum did not verify, up to chunk_max_retries times."""
        for attempt_number in range(self.chunk_max_retries + 1):
            try:
                return attempt()
            except ChecksumMismatch:
                if attempt_number >= self.chunk_max_retries:
                    raise
                self._local_retries += 1
                self.logger.warning(f"Checksum mismatch for {description}, re-requesting (attempt {attempt_number + 2})")

        # Loop always returns or raises
        raise ChecksumMismatch(description, '', '')

    def _transfer_large_file(self, session: MigrationSession, entry: FileManifestEntry, index: int,
                             stats: Dict[str, Any]) -> bool:
        """
        Transfer one large file chunk by chunk, resuming at the saved byte offset.

        Returns:
            False if a pause or cancel was requested mid-file
        """
        cursor = session.file_cursor
        offset = cursor.byte_offset if cursor.current_file_index == index else 0
        cursor.current_file_index = index
        cursor.byte_offset = offset

        if offset:
            self.logger.info(f"Resuming {entry.path} at byte {offset}/{entry.size}")

        while offset < entry.size:
            if self.control.should_stop():
                return False

            def fetch_and_write(start=offset) -> Dict[str, Any]:
                chunk = Chunk.from_response(entry.path, self.source.get_file_chunk(
                    entry.path, start, start + self.chunk_size
                ))
                self.destination.dispatch(WriteChunk(entry.path, start, chunk.data, chunk.checksum))
                return {'bytes_read': chunk.bytes_read}

            written = self._with_checksum_retry(f"{entry.path}@{offset}", fetch_and_write)['bytes_read']
            if written == 0:
                raise SourceRequestError(f"Source returned an empty chunk for {entry.path} at byte {offset}")

            offset += written
            cursor.byte_offset = offset
            session.stats.bytes_transferred += written
            stats['chunks'] += 1
            self.lock.refresh(session.session_id)

        cursor.byte_offset = 0
        cursor.completed_files.add(entry.path)
        session.stats.files_transferred += 1
        stats['files_transferred'] += 1
        return True

    def _transfer_batch(self, session: MigrationSession, paths: List[str], stats: Dict[str, Any]) -> None:
        cursor = session.file_cursor
        payload: Dict[str, Any] = {}

        def fetch_and_extract() -> Dict[str, Any]:
            payload.update(self.source.get_batch(paths))
            return self.destination.dispatch(ExtractBatch(payload.get('data', ''), payload.get('checksum', '')))

        result = self._with_checksum_retry(f"batch of {len(paths)} files", fetch_and_extract)
        stats['batches'] += 1
        session.stats.bytes_transferred += int(payload.get('size', 0))

        for path in result['files']:
            cursor.completed_files.add(path)
        session.stats.files_transferred += result['extracted']
        stats['files_transferred'] += result['extracted']

        phase = session.phase.value
        for path in payload.get('skipped', []):
            stats['files_failed'] += 1
            self.failed_files.append(path)
            session.stats.record_error(phase, ErrorCode.SOURCE_REQUEST_ERROR.value,
                                       f"Source could not read {path}", {'path': path})
        for skipped in result['skipped']:
            stats['files_failed'] += 1
            self.failed_files.append(skipped['path'])
            session.stats.record_error(phase, ErrorCode.PATH_VIOLATION.value,
                                       f"Archive entry {skipped['path']} skipped: {skipped['reason']}", skipped)

    # Phase 4: Finalize

    def _execute_finalize(self, session: MigrationSession) -> bool:
        log_section("Phase 4: Finalize")
        stats: Dict[str, Any] = {}
        self.phase_stats['finalize'] = stats

        replace = self.destination.dispatch(SearchReplace(source_url=session.source_url or None))
        stats['search_replace'] = replace
        for error in replace.get('errors', []):
            session.stats.record_error(session.phase.value, ErrorCode.ROW_APPLY_FAILURE.value,
                                       f"Search-replace failed in {error['table']}: {error['error']}", error)
        self._checkpoint(session)

        stats['restore'] = self.destination.dispatch(FinalizeMigration())
        stats['caches'] = self.destination.dispatch(FlushCaches())

        if self.verify_integrity:
            self.phase_stats['integrity_verification'] = self.integrity_verifier.verify_manifest(
                self._ensure_manifest(session), skip_paths=self.failed_files
            )

        self.logger.info(
            f"Phase 4 complete: {replace.get('rows_changed', 0)} rows rewritten, "
            f"{stats['restore'].get('options_restored', 0)} protected options restored"
        )
        return True

    def _generate_report(self, session: MigrationSession, duration: float) -> Dict[str, Any]:
        self.logger.info("Generating migration report")
        return self.report_generator.generate_report(
            session, self.phase_stats, duration,
            integrity_report=self.phase_stats.get('integrity_verification')
        )


__all__ = ['MigrationOrchestrator', 'cancel_saved_session', 'PHASE_SEQUENCE', 'FILE_LEVEL_ERRORS']
