"""Tests for the migration orchestrator: phases, resume, pause/cancel and file errors."""

import pytest

from conftest import DEST_URL, SOURCE_URL
from destination import DestinationService, MigrationLock, TransientStore
from errors import ConcurrencyConflict, TransientNetworkFailure
from models import DatabaseCursor, MigrationPhase, MigrationSession
from orchestrator import MigrationControl, MigrationOrchestrator, SessionStore, cancel_saved_session
from settings import Settings
from source import SourceService
from stores import SQLiteStore

TABLE_COUNT = 10
BIG_TABLE = 'wp_table_02'
BIG_TABLE_ROWS = 6000
SMALL_TABLE_ROWS = 5
LARGE_FILE = 'uploads/2024/video.mp4'
LARGE_FILE_SIZE = 1200000
SIZE_SETTINGS = {'chunk_size': 524288, 'batch_size': 1000}


def table_name(index):
    return f"wp_table_{index:02d}"


def create_table(store, table):
    store.execute(f"CREATE TABLE {table} (ID INTEGER PRIMARY KEY, value TEXT)")


def fill_table(store, table, first, last):
    with store.transaction():
        for row_id in range(first, last + 1):
            store.execute(f"INSERT INTO {table} (ID, value) VALUES (?, ?)", [row_id, f"{table}-{row_id}"])


class InProcessSource:
    """Stands in for SourceClient by calling a SourceService directly."""

    def __init__(self, service, chunk_max_retries=2):
        self.service = service
        self.base_url = service.site_url
        self.retry_count = 0
        self.chunk_max_retries = chunk_max_retries
        self.row_requests = []
        self.corrupt_chunks = {}
        self.on_rows = None

    def handshake(self):
        return self.service.handshake()

    def get_source_info(self):
        return self.service.get_source_info()

    def get_manifest(self, include_uploads=True):
        return self.service.get_manifest(include_uploads)

    def get_database_info(self):
        return self.service.get_database_info()

    def get_table_schema(self, table):
        return self.service.get_table_schema(table)

    def get_rows(self, table, last_id=None, offset=0, batch=None):
        self.row_requests.append((table, last_id, offset))
        page = self.service.get_rows(table, last_id, offset, batch)
        if self.on_rows:
            self.on_rows(table)
        return page

    def get_file_chunk(self, path, start=0, end=0):
        payload = self.service.get_file_chunk(path, start, end)
        if self.corrupt_chunks.get(path, 0) > 0:
            self.corrupt_chunks[path] -= 1
            payload = dict(payload, checksum='0' * 32)
        return payload

    def get_batch(self, paths):
        return self.service.get_batch(paths)


class Site:
    """A source and destination pair with persistence under tmp_path."""

    def __init__(self, tmp_path):
        self.tmp_path = tmp_path

        self.source_store = SQLiteStore()
        for index in range(TABLE_COUNT):
            create_table(self.source_store, table_name(index))
            rows = BIG_TABLE_ROWS if table_name(index) == BIG_TABLE else SMALL_TABLE_ROWS
            fill_table(self.source_store, table_name(index), 1, rows)

        self.source_root = tmp_path / 'source-content'
        (self.source_root / 'uploads' / '2024').mkdir(parents=True)
        (self.source_root / 'plugins' / 'hello').mkdir(parents=True)
        (self.source_root / 'themes' / 'plain').mkdir(parents=True)
        (self.source_root / LARGE_FILE).write_bytes(bytes(range(256)) * (LARGE_FILE_SIZE // 256) + b'x' * (LARGE_FILE_SIZE % 256))
        (self.source_root / 'plugins' / 'hello' / 'hello.php').write_text('<?php // hello')
        (self.source_root / 'themes' / 'plain' / 'style.css').write_text('body { color: black; }')

        self.source_service = SourceService(
            store=self.source_store,
            content_root=str(self.source_root),
            settings=Settings(overrides=SIZE_SETTINGS),
            site_url=SOURCE_URL,
            table_prefix='wp_'
        )
        self.source = InProcessSource(self.source_service)

        self.dest_store = SQLiteStore()
        self.dest_root = tmp_path / 'dest-content'
        self.dest_root.mkdir()
        self.destination = DestinationService(
            store=self.dest_store,
            settings=Settings(overrides=SIZE_SETTINGS),
            content_root=str(self.dest_root),
            transients=TransientStore(str(tmp_path / 'transients')),
            site_url=DEST_URL,
            table_prefix='wp_'
        )

        self.session_store = SessionStore(str(tmp_path / 'state.json'))
        self.lock = MigrationLock(str(tmp_path / 'migration.lock'))

    def orchestrator(self, control=None, verify_integrity=True, **migration):
        config = {
            'migration': dict({'show_progress': False, 'progress_save_interval': 1}, **migration),
            'advanced': {'chunk_max_retries': 2, 'integrity_verification': {'enabled': verify_integrity}},
        }
        return MigrationOrchestrator(
            source=self.source,
            destination=self.destination,
            session_store=self.session_store,
            lock=self.lock,
            control=control,
            config=config
        )

    def close(self):
        self.source_store.close()
        self.dest_store.close()


@pytest.fixture
def site(tmp_path):
    site = Site(tmp_path)
    yield site
    site.close()


class TestFullMigration:
    """Test an uninterrupted migration."""

    def test_completes_all_phases(self, site):
        report = site.orchestrator().run()

        summary = report['summary']
        assert summary['phase'] == 'complete'
        assert summary['can_resume'] is False
        assert summary['tables_completed'] == TABLE_COUNT
        assert summary['files_completed'] == 3
        assert summary['rows_transferred'] == BIG_TABLE_ROWS + (TABLE_COUNT - 1) * SMALL_TABLE_ROWS
        assert summary['total_errors'] == 0

    def test_destination_matches_source(self, site):
        site.orchestrator().run()

        for index in range(TABLE_COUNT):
            table = table_name(index)
            assert site.dest_store.count_rows(table) == site.source_store.count_rows(table)
        assert (site.dest_root / LARGE_FILE).read_bytes() == (site.source_root / LARGE_FILE).read_bytes()
        assert (site.dest_root / 'themes' / 'plain' / 'style.css').read_text() == 'body { color: black; }'

    def test_large_file_sent_in_chunks(self, site):
        report = site.orchestrator().run()

        assert report['phases']['files']['chunks'] == 3
        assert report['phases']['files']['batches'] == 1

    def test_integrity_verified(self, site):
        report = site.orchestrator().run()

        assert report['integrity_verification']['enabled'] is True
        assert report['integrity_verification']['integrity_score'] == 1.0

    def test_integrity_check_disabled(self, site):
        report = site.orchestrator(verify_integrity=False).run()

        assert report['summary']['phase'] == 'complete'
        assert report['integrity_verification'] == {'enabled': False}

    def test_state_cleared_and_lock_released(self, site):
        report = site.orchestrator().run()

        assert report['summary']['phase'] == 'complete'
        assert not site.session_store.exists()
        assert not site.lock.is_locked()

    def test_next_run_starts_fresh(self, site):
        first = site.orchestrator().run()

        second = site.orchestrator().run()

        assert second['summary']['phase'] == 'complete'
        assert second['summary']['session_id'] != first['summary']['session_id']
        assert site.dest_store.count_rows(BIG_TABLE) == BIG_TABLE_ROWS

    def test_dry_run_changes_nothing(self, site):
        report = site.orchestrator().run(dry_run=True)

        assert report['dry_run'] is True
        assert len(report['phases']['scan']['table_list']) == TABLE_COUNT
        assert report['phases']['scan']['files'] == 3
        assert site.dest_store.list_tables() == []
        assert not site.session_store.exists()

    def test_lock_held_by_other_session(self, site):
        site.lock.acquire('someone-else')

        with pytest.raises(ConcurrencyConflict):
            site.orchestrator().run()


class TestResume:
    """Test re-entry from a saved cursor."""

    @pytest.fixture
    def interrupted_site(self, site):
        """Destination left at table 3 of 10 with 4500 of its rows applied."""
        for index in range(3):
            create_table(site.dest_store, table_name(index))
        fill_table(site.dest_store, table_name(0), 1, SMALL_TABLE_ROWS)
        fill_table(site.dest_store, table_name(1), 1, SMALL_TABLE_ROWS)
        fill_table(site.dest_store, BIG_TABLE, 1, 4500)
        # Present only at the destination; prepare would have dropped it
        site.dest_store.execute(f"INSERT INTO {table_name(0)} (ID, value) VALUES (999, 'keep')")

        session = MigrationSession(
            phase=MigrationPhase.PAUSED,
            resume_phase=MigrationPhase.TRANSFERRING_DATABASE,
            source_url=SOURCE_URL,
            table_prefix_source='wp_',
            table_prefix_dest='wp_',
            total_tables=TABLE_COUNT,
            database_cursor=DatabaseCursor(current_table=2, table_offset=4500, last_table_id=4500),
            can_resume=True
        )
        session.stats.rows_transferred = 2 * SMALL_TABLE_ROWS + 4500
        site.session_store.save(session)
        return site

    def test_resumes_after_last_key(self, interrupted_site):
        site = interrupted_site

        report = site.orchestrator().run()

        assert report['summary']['phase'] == 'complete'
        assert site.source.row_requests[0] == (BIG_TABLE, 4500, 4500)
        assert all(table >= BIG_TABLE for table, _, _ in site.source.row_requests)

    def test_no_rows_lost_or_duplicated(self, interrupted_site):
        site = interrupted_site

        report = site.orchestrator().run()

        assert site.dest_store.count_rows(BIG_TABLE) == BIG_TABLE_ROWS
        assert report['phases']['database']['rows_duplicate'] == 0
        assert report['phases']['database']['rows_inserted'] == 1500 + 7 * SMALL_TABLE_ROWS
        assert report['summary']['rows_transferred'] == BIG_TABLE_ROWS + 9 * SMALL_TABLE_ROWS

    def test_prepare_and_create_skipped(self, interrupted_site):
        site = interrupted_site

        report = site.orchestrator().run()

        assert report['phases']['database']['tables_dropped'] == 0
        assert site.dest_store.query(f"SELECT value FROM {table_name(0)} WHERE ID = 999") == [{'value': 'keep'}]

    def test_session_id_kept(self, interrupted_site):
        site = interrupted_site
        session_id = site.session_store.load().session_id

        report = site.orchestrator().run()

        assert report['summary']['session_id'] == session_id

    def test_no_resume_starts_fresh(self, interrupted_site):
        site = interrupted_site
        session_id = site.session_store.load().session_id

        report = site.orchestrator().run(resume=False)

        assert report['summary']['session_id'] != session_id
        assert report['phases']['database']['tables_dropped'] == 3
        assert site.dest_store.query(f"SELECT value FROM {table_name(0)} WHERE ID = 999") == []
        assert site.dest_store.count_rows(BIG_TABLE) == BIG_TABLE_ROWS


class TestPauseAndCancel:
    """Test cooperative stop requests."""

    def test_pause_mid_table_then_resume(self, site):
        control = MigrationControl()

        def pause_on_big_table(table):
            if table == BIG_TABLE:
                control.request_pause()

        site.source.on_rows = pause_on_big_table
        report = site.orchestrator(control).run()

        assert report['summary']['phase'] == 'paused'
        assert report['summary']['resume_phase'] == 'transferring_database'
        saved = site.session_store.load()
        assert saved.database_cursor.current_table == 2
        assert saved.database_cursor.table_offset == 1000
        assert saved.database_cursor.last_table_id == 1000
        assert not site.lock.is_locked()

        site.source.on_rows = None
        resumed = site.orchestrator().run()

        assert resumed['summary']['phase'] == 'complete'
        assert resumed['phases']['database']['rows_duplicate'] == 0
        assert site.dest_store.count_rows(BIG_TABLE) == BIG_TABLE_ROWS

    def test_pause_before_database(self, site):
        control = MigrationControl()
        control.request_pause()

        report = site.orchestrator(control).run()

        assert report['summary']['phase'] == 'paused'
        assert report['summary']['resume_phase'] == 'transferring_database'
        assert report['summary']['can_resume'] is True

    def test_cancel_is_terminal(self, site):
        control = MigrationControl()
        control.request_cancel()

        report = site.orchestrator(control).run()

        assert report['summary']['phase'] == 'cancelled'
        assert report['summary']['can_resume'] is False
        saved = site.session_store.load()
        assert saved.phase == MigrationPhase.CANCELLED

        # A cancelled session is never resumed
        fresh = site.orchestrator().run()
        assert fresh['summary']['session_id'] != saved.session_id

    def test_cancel_saved_session(self, site):
        session = MigrationSession(phase=MigrationPhase.PAUSED, resume_phase=MigrationPhase.TRANSFERRING_FILES,
                                   can_resume=True)
        site.session_store.save(session)
        site.lock.acquire(session.session_id)

        cancelled = cancel_saved_session(site.session_store, site.lock)

        assert cancelled.phase == MigrationPhase.CANCELLED
        assert site.session_store.load().phase == MigrationPhase.CANCELLED
        assert not site.lock.is_locked()


class TestFileErrors:
    """Test checksum handling during the file phase."""

    def test_checksum_retry_recovers(self, site):
        site.source.corrupt_chunks[LARGE_FILE] = 1

        report = site.orchestrator().run()

        assert report['summary']['phase'] == 'complete'
        assert report['summary']['retries'] == 1
        assert (site.dest_root / LARGE_FILE).stat().st_size == LARGE_FILE_SIZE

    def test_continue_on_file_error(self, site):
        site.source.corrupt_chunks[LARGE_FILE] = 99

        report = site.orchestrator(continue_on_file_error=True).run()

        assert report['summary']['phase'] == 'complete'
        assert report['phases']['files']['files_failed'] == 1
        assert report['errors']['by_code'] == {'checksum_mismatch': 1}
        assert report['errors']['entries'][0]['context'] == {'path': LARGE_FILE}
        # Nothing is written for a chunk that never verified
        assert not (site.dest_root / LARGE_FILE).exists()
        assert (site.dest_root / 'plugins' / 'hello' / 'hello.php').exists()

    def test_stop_on_file_error_then_resume(self, site):
        site.source.corrupt_chunks[LARGE_FILE] = 99

        report = site.orchestrator(continue_on_file_error=False).run()

        assert report['summary']['phase'] == 'error'
        assert report['summary']['resume_phase'] == 'transferring_files'
        assert report['summary']['can_resume'] is True
        assert report['summary']['last_error']['code'] == 'checksum_mismatch'

        site.source.corrupt_chunks.clear()
        resumed = site.orchestrator(continue_on_file_error=False).run()

        assert resumed['summary']['phase'] == 'complete'
        assert (site.dest_root / LARGE_FILE).stat().st_size == LARGE_FILE_SIZE


class TestFailures:
    """Test fatal errors moving the session to the error state."""

    def test_network_failure_recorded(self, site, monkeypatch):
        def unreachable(table):
            raise TransientNetworkFailure("GET /stream/schema failed after 6 attempts", attempts=6)

        monkeypatch.setattr(site.source, 'get_table_schema', unreachable)

        report = site.orchestrator().run()

        assert report['summary']['phase'] == 'error'
        assert report['summary']['resume_phase'] == 'transferring_database'
        assert report['summary']['last_error']['code'] == 'transient_network_failure'
        assert not site.lock.is_locked()


class TestEntryPhase:
    """Test where a run re-enters a saved session."""

    @pytest.mark.parametrize('phase, resume_phase, expected', [
        (MigrationPhase.IDLE, None, MigrationPhase.SCANNING),
        (MigrationPhase.SCAN_COMPLETE, None, MigrationPhase.TRANSFERRING_DATABASE),
        (MigrationPhase.PAUSED, MigrationPhase.TRANSFERRING_FILES, MigrationPhase.TRANSFERRING_FILES),
        (MigrationPhase.ERROR, MigrationPhase.FINALIZING, MigrationPhase.FINALIZING),
        (MigrationPhase.ERROR, None, MigrationPhase.SCANNING),
    ])
    def test_entry_phase(self, phase, resume_phase, expected):
        session = MigrationSession(phase=phase, resume_phase=resume_phase)

        assert MigrationOrchestrator.entry_phase(session) == expected
