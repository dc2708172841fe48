"""Destination side: typed write API, Smart-Merge, snapshots and locking."""

from .connection_key import build_connection_key, generate_secret, parse_connection_key
from .messages import (
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
from .migration_lock import MigrationLock
from .service import DestinationService, rewrite_schema
from .smart_merge import SmartMergePolicy, translate_table_name
from .transients import TransientStore

__all__ = [
    'build_connection_key',
    'generate_secret',
    'parse_connection_key',
    'CreateTable',
    'DropTable',
    'ExtractBatch',
    'FinalizeMigration',
    'FlushCaches',
    'GetDestinationConfig',
    'LoadConnectionKey',
    'PrepareDatabase',
    'ProcessRows',
    'RegenerateSecret',
    'SaveConnectionKey',
    'SearchReplace',
    'SetMode',
    'WriteChunk',
    'MigrationLock',
    'DestinationService',
    'rewrite_schema',
    'SmartMergePolicy',
    'translate_table_name',
    'TransientStore',
]
