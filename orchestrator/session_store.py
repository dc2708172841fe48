"""Versioned JSON persistence of the resumable migration session."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from errors import StateVersionError
from models import DatabaseCursor, FileCursor, MigrationPhase, MigrationSession, SessionStats

STATE_VERSION = '1.0'

STATE_FIELDS = frozenset({
    'version', 'saved_at', 'session_id', 'phase', 'resume_phase', 'source_url',
    'table_prefix_source', 'table_prefix_dest', 'current_table', 'total_tables',
    'table_offset', 'last_table_id', 'current_file_index', 'total_files',
    'file_byte_offset', 'completed_files', 'stats', 'can_resume', 'last_error',
})

STATS_FIELDS = frozenset({
    'start_time', 'end_time', 'bytes_transferred', 'rows_transferred',
    'files_transferred', 'retries', 'errors', 'error_log',
})

# Maps an old version to the function upgrading its blob by one step.
# Each function returns the upgraded dict with its new 'version'.
MIGRATIONS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {}


def _timestamp_to_iso(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _iso_to_timestamp(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return date_parser.isoparse(value).timestamp()
    except ValueError as e:
        raise StateVersionError(f"Invalid timestamp in session state: {value!r} ({e})")


def session_to_dict(session: MigrationSession) -> Dict[str, Any]:
    """Serialize a session to the persisted format. The manifest is left out."""
    stats = session.stats
    return {
        'version': STATE_VERSION,
        'saved_at': datetime.now(timezone.utc).isoformat(),
        'session_id': session.session_id,
        'phase': session.phase.value,
        'resume_phase': session.resume_phase.value if session.resume_phase else None,
        'source_url': session.source_url,
        'table_prefix_source': session.table_prefix_source,
        'table_prefix_dest': session.table_prefix_dest,
        'current_table': session.database_cursor.current_table,
        'total_tables': session.total_tables,
        'table_offset': session.database_cursor.table_offset,
        'last_table_id': session.database_cursor.last_table_id,
        'current_file_index': session.file_cursor.current_file_index,
        'total_files': session.total_files,
        'file_byte_offset': session.file_cursor.byte_offset,
        'completed_files': sorted(session.file_cursor.completed_files),
        'stats': {
            'start_time': _timestamp_to_iso(stats.start_time),
            'end_time': _timestamp_to_iso(stats.end_time),
            'bytes_transferred': stats.bytes_transferred,
            'rows_transferred': stats.rows_transferred,
            'files_transferred': stats.files_transferred,
            'retries': stats.retries,
            'errors': stats.errors,
            'error_log': stats.error_log,
        },
        'can_resume': session.can_resume,
        'last_error': session.last_error,
    }


def _phase(value: Optional[str], field_name: str) -> Optional[MigrationPhase]:
    if value is None:
        return None
    try:
        return MigrationPhase(value)
    except ValueError:
        raise StateVersionError(f"Unknown {field_name} in session state: {value!r}")


def session_from_dict(data: Dict[str, Any]) -> MigrationSession:
    """
    Rebuild a session from a persisted blob, upgrading older versions first.

    Raises:
        StateVersionError: On an unknown version, unknown fields or bad values
    """
    data = upgrade_state(data)

    unknown = set(data) - STATE_FIELDS
    if unknown:
        raise StateVersionError(f"Unknown fields in session state: {', '.join(sorted(unknown))}")

    stats_data = data.get('stats') or {}
    unknown_stats = set(stats_data) - STATS_FIELDS
    if unknown_stats:
        raise StateVersionError(f"Unknown stats fields in session state: {', '.join(sorted(unknown_stats))}")

    stats = SessionStats(
        start_time=_iso_to_timestamp(stats_data.get('start_time')),
        end_time=_iso_to_timestamp(stats_data.get('end_time')),
        bytes_transferred=int(stats_data.get('bytes_transferred', 0)),
        rows_transferred=int(stats_data.get('rows_transferred', 0)),
        files_transferred=int(stats_data.get('files_transferred', 0)),
        retries=int(stats_data.get('retries', 0)),
        errors=int(stats_data.get('errors', 0)),
        error_log=list(stats_data.get('error_log') or [])
    )

    session = MigrationSession(
        phase=_phase(data.get('phase', 'idle'), 'phase'),
        resume_phase=_phase(data.get('resume_phase'), 'resume_phase'),
        source_url=data.get('source_url', ''),
        table_prefix_source=data.get('table_prefix_source', ''),
        table_prefix_dest=data.get('table_prefix_dest', ''),
        total_tables=int(data.get('total_tables', 0)),
        total_files=int(data.get('total_files', 0)),
        database_cursor=DatabaseCursor(
            current_table=int(data.get('current_table', 0)),
            table_offset=int(data.get('table_offset', 0)),
            last_table_id=data.get('last_table_id')
        ),
        file_cursor=FileCursor(
            current_file_index=int(data.get('current_file_index', 0)),
            byte_offset=int(data.get('file_byte_offset', 0)),
            completed_files=set(data.get('completed_files') or [])
        ),
        stats=stats,
        can_resume=bool(data.get('can_resume', False)),
        last_error=data.get('last_error')
    )
    if data.get('session_id'):
        session.session_id = data['session_id']
    return session


def upgrade_state(data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply per-version migrations until the blob reaches STATE_VERSION."""
    if not isinstance(data, dict):
        raise StateVersionError("Session state must be a JSON object")

    version = data.get('version')
    seen = set()
    while version != STATE_VERSION:
        if version not in MIGRATIONS or version in seen:
            raise StateVersionError(f"Unsupported session state version: {version!r}")
        seen.add(version)
        data = MIGRATIONS[version](dict(data))
        version = data.get('version')
    return data


class SessionStore:
    """Saves and restores one MigrationSession as a JSON file."""

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger('site_migrator.state')

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def save(self, session: MigrationSession) -> None:
        """Write the session atomically (temp file then rename)."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(session_to_dict(session), f, indent=2, default=str)
        os.replace(tmp_path, self.path)

        self.logger.debug(
            f"Session state saved to {self.path} (phase={session.phase.value}, "
            f"table={session.database_cursor.current_table}, files={len(session.file_cursor.completed_files)})"
        )

    def load(self) -> Optional[MigrationSession]:
        """
        Load the saved session, or None if nothing is saved.

        Raises:
            StateVersionError: If the file is unreadable or of an unsupported version
        """
        if not self.exists():
            return None

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateVersionError(f"Corrupt session state in {self.path}: {e}")

        session = session_from_dict(data)
        self.logger.info(f"Loaded session {session.session_id} from {self.path} (phase={session.phase.value})")
        return session

    def clear(self) -> None:
        if self.exists():
            os.remove(self.path)
            self.logger.info(f"Cleared session state at {self.path}")


__all__ = [
    'SessionStore',
    'STATE_VERSION',
    'MIGRATIONS',
    'session_to_dict',
    'session_from_dict',
    'upgrade_state',
]
