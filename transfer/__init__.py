"""File and row transfer primitives."""

from .archive import ArchiveExtractor, build_archive
from .chunk_transport import FILE_MODE, ChunkWriter, md5_hex, read_chunk
from .file_scanner import FileScanner, build_manifest, calculate_chunks, create_batches, format_size
from .path_safety import check_depth, is_path_safe, resolve_safe_path
from .row_pager import COMMON_KEY_NAMES, RowPager, decode_row, detect_primary_key, encode_row

__all__ = [
    'ArchiveExtractor',
    'build_archive',
    'ChunkWriter',
    'FILE_MODE',
    'md5_hex',
    'read_chunk',
    'FileScanner',
    'build_manifest',
    'calculate_chunks',
    'create_batches',
    'format_size',
    'check_depth',
    'is_path_safe',
    'resolve_safe_path',
    'COMMON_KEY_NAMES',
    'RowPager',
    'decode_row',
    'detect_primary_key',
    'encode_row',
]
