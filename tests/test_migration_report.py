"""Tests for report generation and export."""

import csv
import json

import pytest

from models import DatabaseCursor, FileCursor, MigrationPhase, MigrationSession
from orchestrator import MigrationReport


@pytest.fixture
def session():
    session = MigrationSession(
        phase=MigrationPhase.PAUSED,
        resume_phase=MigrationPhase.TRANSFERRING_FILES,
        source_url='https://old.example.com',
        total_tables=12,
        total_files=5,
        database_cursor=DatabaseCursor(current_table=12),
        file_cursor=FileCursor(completed_files={'themes/a.css', 'themes/b.css'}),
        can_resume=True
    )
    session.stats.start_time = 1000.0
    session.stats.rows_transferred = 4200
    session.stats.bytes_transferred = 3 * 1024 * 1024
    session.stats.retries = 2
    session.stats.record_error('transferring_files', 'checksum_mismatch', 'bad chunk', {'path': 'uploads/a.mp4'})
    session.stats.record_error('transferring_files', 'path_violation', 'unsafe entry', {'path': '../x'})
    session.stats.record_error('transferring_database', 'row_apply_failure', 'bad row', {'table': 'wp_posts'})
    return session


@pytest.fixture
def phase_stats():
    return {
        'database': {
            'tables_completed': 12, 'rows_inserted': 4200, 'rows_duplicate': 3, 'row_errors': 1,
            'prepare': {'dropped': ['wp_posts', 'wp_postmeta'], 'preserved': ['wp_users']},
        },
        'files': {'files_transferred': 2, 'files_failed': 2, 'files_skipped': 0, 'chunks': 4, 'batches': 1},
    }


@pytest.fixture
def reporter():
    return MigrationReport()


class TestGenerateReport:
    """Test report aggregation."""

    def test_summary(self, reporter, session, phase_stats):
        summary = reporter.generate_report(session, phase_stats, 75.0)['summary']

        assert summary['phase'] == 'paused'
        assert summary['resume_phase'] == 'transferring_files'
        assert summary['can_resume'] is True
        assert summary['tables_completed'] == 12
        assert summary['files_completed'] == 2
        assert summary['bytes_formatted'] == '3.0 MB'
        assert summary['duration_formatted'] == '1m 15s'
        assert summary['total_duration_formatted'] is None
        assert summary['total_errors'] == 3

    def test_phase_breakdown(self, reporter, session, phase_stats):
        phases = reporter.generate_report(session, phase_stats, 1.0)['phases']

        assert phases['database']['tables_dropped'] == 2
        assert phases['database']['tables_preserved'] == ['wp_users']
        assert phases['files']['chunks'] == 4
        assert 'finalize' not in phases

    def test_error_summary(self, reporter, session, phase_stats):
        errors = reporter.generate_report(session, phase_stats, 1.0)['errors']

        assert errors['total'] == 3
        assert errors['by_code'] == {'checksum_mismatch': 1, 'path_violation': 1, 'row_apply_failure': 1}
        assert errors['by_phase'] == {'transferring_files': 2, 'transferring_database': 1}

    def test_integrity_disabled(self, reporter, session):
        assert reporter.generate_report(session, {}, 1.0)['integrity_verification'] == {'enabled': False}

    def test_integrity_included(self, reporter, session):
        integrity = {
            'files_checked': 4, 'files_ok': 3, 'missing': ['uploads/a.jpg'], 'size_mismatch': [],
            'summary': {'integrity_score': 0.75, 'total_issues': 1},
        }

        result = reporter.generate_report(session, {}, 1.0, integrity_report=integrity)['integrity_verification']

        assert result['enabled'] is True
        assert result['integrity_score'] == 0.75
        assert result['missing'] == ['uploads/a.jpg']

    @pytest.mark.parametrize('seconds, expected', [(12.34, '12.3s'), (125, '2m 5s'), (3725, '1h 2m 5s')])
    def test_format_duration(self, reporter, seconds, expected):
        assert reporter._format_duration(seconds) == expected


class TestFormatting:
    """Test console output and exports."""

    def test_console_report(self, reporter, session, phase_stats):
        report = reporter.generate_report(session, phase_stats, 5.0)
        report['summary']['last_error'] = {'message': 'Source timed out'}

        text = reporter.format_console_report(report)

        assert 'MIGRATION REPORT' in text
        assert 'Resumes at:  transferring_files' in text
        assert 'Rows: 4200 inserted, 3 duplicates, 1 errors' in text
        assert '[transferring_files] checksum_mismatch: bad chunk' in text
        assert 'Last error: Source timed out' in text

    def test_console_error_limit(self, reporter, session):
        for index in range(12):
            session.stats.record_error('finalizing', 'row_apply_failure', f'error {index}')

        text = reporter.format_console_report(reporter.generate_report(session, {}, 1.0))

        assert '... and 5 more' in text

    def test_dry_run_preview(self, reporter):
        report = reporter.generate_report(MigrationSession(), {
            'scan': {
                'source_url': 'https://old.example.com', 'tables': 1, 'rows': 10, 'files': 3,
                'total_size': 2048, 'large_files': 1, 'batches': 1,
                'table_list': [{'name': 'wp_posts', 'destination_name': 'site2_posts', 'rows': 10}],
            }
        }, 0.5)
        report['dry_run'] = True

        text = reporter.format_console_report(report)

        assert 'DRY RUN PREVIEW' in text
        assert 'wp_posts -> site2_posts (10 rows)' in text
        assert 'No changes were made.' in text

    def test_json_export(self, reporter, session, phase_stats, tmp_path):
        report = reporter.generate_report(session, phase_stats, 1.0)
        path = tmp_path / 'report.json'

        reporter.export_json_report(report, str(path))

        assert json.loads(path.read_text())['summary']['session_id'] == session.session_id

    def test_csv_export(self, reporter, session, phase_stats, tmp_path):
        path = tmp_path / 'errors.csv'

        reporter.export_csv_errors(reporter.generate_report(session, phase_stats, 1.0), str(path))

        with open(path, newline='', encoding='utf-8') as f:
            rows = list(csv.reader(f))
        assert rows[0] == ['timestamp', 'phase', 'code', 'message', 'context']
        assert rows[1][2:] == ['checksum_mismatch', 'bad chunk', '{"path": "uploads/a.mp4"}']
        assert len(rows) == 4
