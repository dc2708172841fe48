"""Typed requests accepted by the destination write API."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class SetMode:
    mode: str


@dataclass(frozen=True)
class RegenerateSecret:
    pass


@dataclass(frozen=True)
class SaveConnectionKey:
    key: str


@dataclass(frozen=True)
class LoadConnectionKey:
    pass


@dataclass(frozen=True)
class GetDestinationConfig:
    pass


@dataclass(frozen=True)
class PrepareDatabase:
    """Apply the Smart-Merge plan for the tables about to be transferred."""
    tables: Tuple[str, ...]
    source_prefix: str = 'wp_'
    overwrite: bool = True
    current_user_id: Optional[int] = None


@dataclass(frozen=True)
class CreateTable:
    """Create one destination table from the verbatim source schema."""
    schema: str
    source_table_name: str
    source_prefix: str = 'wp_'


@dataclass(frozen=True)
class DropTable:
    table: str


@dataclass(frozen=True)
class ProcessRows:
    """Insert one wire-encoded row batch into the prefix-translated table."""
    table: str
    rows: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)
    source_prefix: str = 'wp_'


@dataclass(frozen=True)
class WriteChunk:
    path: str
    offset: int
    data: bytes
    checksum: str


@dataclass(frozen=True)
class ExtractBatch:
    """One base64 zip archive of small files."""
    data: str
    checksum: str


@dataclass(frozen=True)
class SearchReplace:
    source_url: Optional[str] = None
    destination_url: Optional[str] = None


@dataclass(frozen=True)
class FlushCaches:
    pass


@dataclass(frozen=True)
class FinalizeMigration:
    pass


__all__ = [
    'SetMode',
    'RegenerateSecret',
    'SaveConnectionKey',
    'LoadConnectionKey',
    'GetDestinationConfig',
    'PrepareDatabase',
    'CreateTable',
    'DropTable',
    'ProcessRows',
    'WriteChunk',
    'ExtractBatch',
    'SearchReplace',
    'FlushCaches',
    'FinalizeMigration',
]
