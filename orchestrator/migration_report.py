"""
Migration report generator for aggregating statistics and formatting reports.

This module builds a report from the migration session and per-phase
statistics, formatting it for console display, JSON export and a CSV error
listing.
"""

import csv
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from models import MigrationSession
from transfer.file_scanner import format_size

logger = logging.getLogger('site_migrator.report')

MAX_CONSOLE_ERRORS = 10


class MigrationReport:
    """Generates migration reports aggregating session and phase statistics."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize migration report generator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger('site_migrator.report')

    def generate_report(
        self,
        session: MigrationSession,
        phase_stats: Dict[str, Any],
        migration_duration: float,
        integrity_report: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Generate migration report.

        Args:
            session: Session that was run (its stats cover earlier resumed runs too)
            phase_stats: Statistics from the phases executed in this run
            migration_duration: Duration of this run in seconds
            integrity_report: Optional integrity verification results

        Returns:
            Migration report dictionary
        """
        report = {
            'summary': self._build_summary(session, migration_duration),
            'phases': self._build_phase_breakdown(phase_stats),
            'integrity_verification': self._build_integrity_verification(integrity_report),
            'errors': self._build_error_summary(session),
            'timestamp': datetime.now().isoformat()
        }

        self.logger.info(
            f"Report generated: phase {report['summary']['phase']}, "
            f"{report['summary']['total_errors']} errors"
        )

        return report

    def _build_summary(self, session: MigrationSession, migration_duration: float) -> Dict[str, Any]:
        stats = session.stats
        cursor = session.file_cursor
        total_duration = (stats.end_time - stats.start_time) if stats.start_time and stats.end_time else None

        return {
            'session_id': session.session_id,
            'phase': session.phase.value,
            'resume_phase': session.resume_phase.value if session.resume_phase else None,
            'can_resume': session.can_resume,
            'source_url': session.source_url,
            'table_prefix_source': session.table_prefix_source,
            'table_prefix_dest': session.table_prefix_dest,
            'tables_completed': min(session.database_cursor.current_table, session.total_tables),
            'total_tables': session.total_tables,
            'files_completed': len(cursor.completed_files),
            'total_files': session.total_files,
            'rows_transferred': stats.rows_transferred,
            'files_transferred': stats.files_transferred,
            'bytes_transferred': stats.bytes_transferred,
            'bytes_formatted': format_size(stats.bytes_transferred),
            'retries': stats.retries,
            'total_errors': stats.errors,
            'duration': migration_duration,
            'duration_formatted': self._format_duration(migration_duration),
            'total_duration_formatted': self._format_duration(total_duration) if total_duration else None,
            'last_error': session.last_error,
        }

    def _build_phase_breakdown(self, phase_stats: Dict[str, Any]) -> Dict[str, Any]:
        phases: Dict[str, Any] = {}

        if 'scan' in phase_stats:
            scan = phase_stats['scan']
            phases['scan'] = {key: value for key, value in scan.items() if key != 'table_list'}
            if 'table_list' in scan:
                phases['scan']['table_list'] = scan['table_list']

        if 'database' in phase_stats:
            database = phase_stats['database']
            prepare = database.get('prepare') or {}
            phases['database'] = {
                'tables_completed': database.get('tables_completed', 0),
                'rows_inserted': database.get('rows_inserted', 0),
                'rows_duplicate': database.get('rows_duplicate', 0),
                'row_errors': database.get('row_errors', 0),
                'tables_dropped': len(prepare.get('dropped', [])),
                'tables_preserved': prepare.get('preserved', []),
            }

        if 'files' in phase_stats:
            phases['files'] = dict(phase_stats['files'])

        if 'finalize' in phase_stats:
            finalize = phase_stats['finalize']
            replace = finalize.get('search_replace') or {}
            restore = finalize.get('restore') or {}
            caches = finalize.get('caches') or {}
            phases['finalize'] = {
                'tables_scanned': replace.get('tables_processed', 0),
                'rows_scanned': replace.get('rows_processed', 0),
                'rows_rewritten': replace.get('rows_changed', 0),
                'rewrite_errors': len(replace.get('errors', [])),
                'options_restored': restore.get('options_restored', 0),
                'admin_restored': restore.get('admin_restored', False),
                'cache_options_deleted': caches.get('options_deleted', 0),
            }

        return phases

    def _build_integrity_verification(self, integrity_report: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not integrity_report:
            return {'enabled': False}

        summary = integrity_report.get('summary', {})
        return {
            'enabled': True,
            'files_checked': integrity_report.get('files_checked', 0),
            'files_ok': integrity_report.get('files_ok', 0),
            'missing': integrity_report.get('missing', []),
            'size_mismatch': integrity_report.get('size_mismatch', []),
            'integrity_score': summary.get('integrity_score', 1.0),
            'total_issues': summary.get('total_issues', 0),
        }

    def _build_error_summary(self, session: MigrationSession) -> Dict[str, Any]:
        by_code: Dict[str, int] = {}
        by_phase: Dict[str, int] = {}
        for entry in session.stats.error_log:
            by_code[entry.get('code', 'unknown_error')] = by_code.get(entry.get('code', 'unknown_error'), 0) + 1
            by_phase[entry.get('phase', 'unknown')] = by_phase.get(entry.get('phase', 'unknown'), 0) + 1

        return {
            'total': len(session.stats.error_log),
            'by_code': by_code,
            'by_phase': by_phase,
            'entries': list(session.stats.error_log),
        }

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            minutes = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{minutes}m {secs}s"
        else:
            hours = int(seconds // 3600)
            minutes = int((seconds % 3600) // 60)
            secs = int(seconds % 60)
            return f"{hours}h {minutes}m {secs}s"

    def format_console_report(self, report: Dict[str, Any]) -> str:
        """
        Format report for console display.

        Args:
            report: Migration report dictionary

        Returns:
            Formatted console string
        """
        sections: List[str] = []

        sections.append("=" * 60)
        sections.append("DRY RUN PREVIEW" if report.get('dry_run') else "MIGRATION REPORT")
        sections.append("=" * 60)
        sections.append("")

        summary = report.get('summary', {})
        phases = report.get('phases', {})

        if report.get('dry_run'):
            scan = phases.get('scan', {})
            sections.append(f"Source:  {scan.get('source_url', 'unknown')}")
            sections.append(f"Tables:  {scan.get('tables', 0)} ({scan.get('rows', 0)} rows)")
            for table in scan.get('table_list', []):
                sections.append(f"  {table['name']} -> {table['destination_name']} ({table['rows']} rows)")
            sections.append(
                f"Files:   {scan.get('files', 0)} ({format_size(scan.get('total_size', 0))}), "
                f"{scan.get('large_files', 0)} chunked, {scan.get('batches', 0)} batches"
            )
            sections.append("")
            sections.append("No changes were made.")
            sections.append("=" * 60)
            return "\n".join(sections)

        sections.append("Summary:")
        sections.append(f"  Session:     {summary.get('session_id', '')}")
        sections.append(f"  Status:      {summary.get('phase', 'unknown')}")
        if summary.get('can_resume') and summary.get('resume_phase'):
            sections.append(f"  Resumes at:  {summary['resume_phase']}")
        sections.append(f"  Tables:      {summary.get('tables_completed', 0)}/{summary.get('total_tables', 0)}")
        sections.append(f"  Rows:        {summary.get('rows_transferred', 0)}")
        sections.append(f"  Files:       {summary.get('files_completed', 0)}/{summary.get('total_files', 0)}")
        sections.append(f"  Transferred: {summary.get('bytes_formatted', '0 B')}")
        sections.append(f"  Retries:     {summary.get('retries', 0)}")
        sections.append(f"  Duration:    {summary.get('duration_formatted', '0s')}")
        sections.append("")

        sections.append("Phase Breakdown:")
        sections.append("-" * 60)

        if 'scan' in phases:
            scan = phases['scan']
            sections.append("  Scan:")
            sections.append(f"    {scan.get('tables', 0)} tables, {scan.get('files', 0)} files")

        if 'database' in phases:
            database = phases['database']
            sections.append("  Database Transfer:")
            sections.append(
                f"    Rows: {database['rows_inserted']} inserted, "
                f"{database['rows_duplicate']} duplicates, {database['row_errors']} errors"
            )
            sections.append(f"    Tables: {database['tables_completed']} completed, {database['tables_dropped']} replaced")

        if 'files' in phases:
            files = phases['files']
            sections.append("  File Transfer:")
            sections.append(
                f"    Files: {files.get('files_transferred', 0)} transferred, "
                f"{files.get('files_failed', 0)} failed, {files.get('files_skipped', 0)} already complete"
            )

        if 'finalize' in phases:
            finalize = phases['finalize']
            sections.append("  Finalize:")
            sections.append(
                f"    {finalize['rows_rewritten']} rows rewritten, "
                f"{finalize['options_restored']} protected options restored"
            )

        integrity = report.get('integrity_verification', {})
        if integrity.get('enabled'):
            sections.append("  Integrity Verification:")
            sections.append(
                f"    Score: {integrity.get('integrity_score', 0):.1%} "
                f"({integrity.get('total_issues', 0)} issues)"
            )

        sections.append("")

        errors = report.get('errors', {})
        if errors.get('total'):
            sections.append(f"Errors ({errors['total']}):")
            sections.append("-" * 60)
            for entry in errors.get('entries', [])[:MAX_CONSOLE_ERRORS]:
                sections.append(f"  [{entry.get('phase')}] {entry.get('code')}: {entry.get('message')}")
            if errors['total'] > MAX_CONSOLE_ERRORS:
                sections.append(f"  ... and {errors['total'] - MAX_CONSOLE_ERRORS} more")
            sections.append("")

        last_error = summary.get('last_error')
        if last_error:
            sections.append(f"Last error: {last_error.get('message')}")
            sections.append("")

        sections.append("=" * 60)

        return "\n".join(sections)

    def export_json_report(self, report: Dict[str, Any], filepath: str) -> None:
        """
        Export report to JSON file.

        Args:
            report: Migration report dictionary
            filepath: Output file path
        """
        try:
            with open(filepath, 'w', encoding='utf-8') as f:
                json.dump(report, f, indent=2, ensure_ascii=False, default=str)

            self.logger.info(f"JSON report exported to {filepath}")

        except OSError as e:
            self.logger.error(f"Failed to export JSON report: {str(e)}")

    def export_csv_errors(self, report: Dict[str, Any], filepath: str) -> None:
        """
        Export the error log to CSV.

        Args:
            report: Migration report dictionary
            filepath: Output file path
        """
        try:
            with open(filepath, 'w', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)
                writer.writerow(['timestamp', 'phase', 'code', 'message', 'context'])

                for entry in report.get('errors', {}).get('entries', []):
                    writer.writerow([
                        datetime.fromtimestamp(entry.get('timestamp', 0)).isoformat(),
                        entry.get('phase', ''),
                        entry.get('code', ''),
                        entry.get('message', ''),
                        json.dumps(entry.get('context', {}), default=str)
                    ])

            self.logger.info(f"CSV error log exported to {filepath}")

        except OSError as e:
            self.logger.error(f"Failed to export CSV error log: {str(e)}")


__all__ = ['MigrationReport']
