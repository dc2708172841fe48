"""Data models for the site migration pipeline."""

import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set

logger = logging.getLogger('site_migrator')

__version__ = "1.0.0"

DEFAULT_CHUNK_SIZE = 2 * 1024 * 1024


class MigrationPhase(Enum):
    """Lifecycle states of a migration session."""
    IDLE = "idle"
    SCANNING = "scanning"
    SCAN_COMPLETE = "scan_complete"
    TRANSFERRING_DATABASE = "transferring_database"
    TRANSFERRING_FILES = "transferring_files"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    PAUSED = "paused"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def in_progress(self) -> bool:
        return self in IN_PROGRESS_PHASES

    @property
    def terminal(self) -> bool:
        return self in (MigrationPhase.COMPLETE, MigrationPhase.CANCELLED)


IN_PROGRESS_PHASES = frozenset({
    MigrationPhase.SCANNING,
    MigrationPhase.SCAN_COMPLETE,
    MigrationPhase.TRANSFERRING_DATABASE,
    MigrationPhase.TRANSFERRING_FILES,
    MigrationPhase.FINALIZING,
})


class SiteMode(Enum):
    """Role a site plays in a migration."""
    SOURCE = "source"
    DESTINATION = "destination"
    NONE = "none"


@dataclass
class FileManifestEntry:
    """One file eligible for transfer, relative to the content root."""

    path: str
    name: str
    size: int
    modified: int = 0
    is_large: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize entry to dictionary."""
        return {
            'path': self.path,
            'name': self.name,
            'size': self.size,
            'modified': self.modified,
            'is_large': self.is_large
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileManifestEntry':
        """Deserialize entry from dictionary."""
        return cls(
            path=data['path'],
            name=data.get('name') or data['path'].rsplit('/', 1)[-1],
            size=int(data['size']),
            modified=int(data.get('modified', 0)),
            is_large=bool(data.get('is_large', False))
        )


@dataclass
class FileManifest:
    """Enumerated, filtered file list produced by the scan phase."""

    files: List[FileManifestEntry] = field(default_factory=list)
    total_size: int = 0
    total_count: int = 0
    large_files: int = 0
    small_files: int = 0
    batches: int = 0
    large_files_count: int = 0
    total_chunks: int = 0

    def add(self, entry: FileManifestEntry) -> None:
        """Append an entry and update aggregate counters."""
        self.files.append(entry)
        self.total_size += entry.size
        self.total_count += 1
        if entry.is_large:
            self.large_files += 1
        else:
            self.small_files += 1

    def large_entries(self) -> List[FileManifestEntry]:
        return [entry for entry in self.files if entry.is_large]

    def small_entries(self) -> List[FileManifestEntry]:
        return [entry for entry in self.files if not entry.is_large]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize manifest to dictionary."""
        return {
            'files': [entry.to_dict() for entry in self.files],
            'total_size': self.total_size,
            'total_count': self.total_count,
            'large_files': self.large_files,
            'small_files': self.small_files,
            'batches': self.batches,
            'large_files_count': self.large_files_count,
            'total_chunks': self.total_chunks
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileManifest':
        """Deserialize manifest from dictionary."""
        files = [FileManifestEntry.from_dict(item) for item in data.get('files', [])]
        return cls(
            files=files,
            total_size=int(data.get('total_size', sum(f.size for f in files))),
            total_count=int(data.get('total_count', len(files))),
            large_files=int(data.get('large_files', 0)),
            small_files=int(data.get('small_files', 0)),
            batches=int(data.get('batches', 0)),
            large_files_count=int(data.get('large_files_count', 0)),
            total_chunks=int(data.get('total_chunks', 0))
        )


@dataclass
class TableDescriptor:
    """A source table scheduled for transfer."""

    name: str
    rows: int = 0
    destination_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize descriptor to dictionary."""
        return {
            'name': self.name,
            'rows': self.rows,
            'destination_name': self.destination_name
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableDescriptor':
        """Deserialize descriptor from dictionary."""
        return cls(
            name=data['name'],
            rows=int(data.get('rows', 0)),
            destination_name=data.get('destination_name')
        )


@dataclass
class Chunk:
    """A contiguous byte range of one file with its md5 digest."""

    path: str
    offset: int
    data: bytes
    checksum: str
    file_size: int = 0

    @property
    def bytes_read(self) -> int:
        return len(self.data)

    @property
    def end_offset(self) -> int:
        """Exclusive end offset of this chunk."""
        return self.offset + len(self.data)

    @classmethod
    def from_response(cls, path: str, payload: Dict[str, Any]) -> 'Chunk':
        """Build a chunk from a source stream/file response."""
        return cls(
            path=path,
            offset=int(payload.get('offset', 0)),
            data=base64.b64decode(payload.get('data', '')),
            checksum=payload.get('checksum', ''),
            file_size=int(payload.get('file_size', 0))
        )


@dataclass
class RowBatch:
    """One page of rows from the keyset row pager."""

    table: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    next_id: Any = None
    has_more: bool = False
    primary_key: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize batch to the wire format."""
        return {
            'rows': self.rows,
            'count': self.count,
            'next_id': self.next_id,
            'has_more': self.has_more,
            'primary_key': self.primary_key
        }

    @classmethod
    def from_dict(cls, table: str, data: Dict[str, Any]) -> 'RowBatch':
        """Deserialize batch from the wire format."""
        return cls(
            table=table,
            rows=list(data.get('rows', [])),
            next_id=data.get('next_id'),
            has_more=bool(data.get('has_more', False)),
            primary_key=data.get('primary_key')
        )


@dataclass
class DatabaseCursor:
    """Resumable position inside the database phase."""

    current_table: int = 0
    table_offset: int = 0
    # None until a keyed page has been applied; 0 is a valid key
    last_table_id: Any = None

    def reset_table(self) -> None:
        """Clear per-table cursor fields before moving to the next table."""
        self.table_offset = 0
        self.last_table_id = None

    @property
    def mid_table(self) -> bool:
        return bool(self.table_offset) or self.last_table_id is not None


@dataclass
class FileCursor:
    """Resumable position inside the files phase."""

    current_file_index: int = 0
    byte_offset: int = 0
    completed_files: Set[str] = field(default_factory=set)


@dataclass
class SessionStats:
    """Aggregate counters for one migration session."""

    start_time: Optional[float] = None
    end_time: Optional[float] = None
    bytes_transferred: int = 0
    rows_transferred: int = 0
    files_transferred: int = 0
    retries: int = 0
    errors: int = 0
    error_log: List[Dict[str, Any]] = field(default_factory=list)

    def record_error(self, phase: str, code: str, message: str,
                     context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Append an entry to the error log and bump the error counter."""
        entry = {
            'timestamp': time.time(),
            'phase': phase,
            'code': code,
            'message': message,
            'context': context or {}
        }
        self.error_log.append(entry)
        self.errors += 1
        return entry


@dataclass
class MigrationSession:
    """The resumable unit of work driven by the orchestrator."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: MigrationPhase = MigrationPhase.IDLE
    resume_phase: Optional[MigrationPhase] = None
    source_url: str = ''
    table_prefix_source: str = ''
    table_prefix_dest: str = ''
    total_tables: int = 0
    total_files: int = 0
    database_cursor: DatabaseCursor = field(default_factory=DatabaseCursor)
    file_cursor: FileCursor = field(default_factory=FileCursor)
    stats: SessionStats = field(default_factory=SessionStats)
    can_resume: bool = False
    last_error: Optional[Dict[str, Any]] = None
    # Never persisted; re-fetched from the source on resume
    manifest: Optional[FileManifest] = None
    tables: List[TableDescriptor] = field(default_factory=list)

    def transition(self, phase: MigrationPhase) -> None:
        """Move to a new phase, remembering where to re-enter after pause or error."""
        if self.phase.terminal and phase != self.phase:
            raise ValueError(f"Cannot leave terminal phase {self.phase.value}")

        if phase in (MigrationPhase.PAUSED, MigrationPhase.ERROR):
            if self.phase.in_progress:
                self.resume_phase = self.phase
            self.can_resume = True
        elif phase == MigrationPhase.CANCELLED:
            self.can_resume = False
        elif phase == MigrationPhase.COMPLETE:
            self.can_resume = False
            self.resume_phase = None
        elif phase.in_progress:
            self.can_resume = True

        logger.debug(f"Session {self.session_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase


@dataclass(frozen=True)
class ProtectedEntitySet:
    """Destination tables and options kept intact by Smart-Merge."""

    tables: FrozenSet[str] = frozenset({'users', 'usermeta'})
    options: FrozenSet[str] = frozenset({
        'siteurl', 'home', 'admin_email', 'active_plugins', 'current_theme',
        'template', 'stylesheet', 'sm_migration_secret', 'sm_source_url',
        'sm_source_mode',
    })

    @classmethod
    def from_settings(cls, settings) -> 'ProtectedEntitySet':
        """Build the policy table from a Settings instance."""
        return cls(
            tables=frozenset(settings.get('protected_tables')),
            options=frozenset(settings.get('protected_options'))
        )


__all__ = [
    '__version__',
    'DEFAULT_CHUNK_SIZE',
    'MigrationPhase',
    'IN_PROGRESS_PHASES',
    'SiteMode',
    'FileManifestEntry',
    'FileManifest',
    'TableDescriptor',
    'Chunk',
    'RowBatch',
    'DatabaseCursor',
    'FileCursor',
    'SessionStats',
    'MigrationSession',
    'ProtectedEntitySet',
]
