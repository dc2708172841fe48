"""Checksummed chunk transport: byte-range reads on the source, verified writes on the destination."""

import base64
import fcntl
import hashlib
import logging
import os
from typing import Any, Dict, Optional

from errors import ChecksumMismatch
from models import DEFAULT_CHUNK_SIZE
from transfer.path_safety import resolve_safe_path

logger = logging.getLogger('site_migrator.transfer.chunk')

FILE_MODE = 0o644


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def read_chunk(root: str, path: str, start: int = 0, end: Optional[int] = None,
               chunk_size: int = DEFAULT_CHUNK_SIZE) -> Dict[str, Any]:
    """
    Read one byte range of a file under root.

    Args:
        root: Content root directory
        path: File path relative to root
        start: First byte offset
        end: Exclusive end offset (None or 0 reads chunk_size bytes)
        chunk_size: Default range length

    Returns:
        Dictionary with base64 data, md5 checksum, bytes_read, file_size, offset

    Raises:
        PathViolation: If path escapes root
        FileNotFoundError: If path is not a regular file
    """
    full_path = resolve_safe_path(root, path)
    if not os.path.isfile(full_path):
        raise FileNotFoundError(f"File not found: {path}")

    start = max(0, int(start or 0))
    length = (int(end) - start) if end else chunk_size
    if length < 0:
        raise ValueError(f"Invalid byte range {start}-{end} for {path}")

    file_size = os.path.getsize(full_path)
    with open(full_path, 'rb') as f:
        f.seek(start)
        data = f.read(length)

    logger.debug(f"Read {len(data)} bytes from {path} at offset {start}")

    return {
        'data': base64.b64encode(data).decode('ascii'),
        'checksum': md5_hex(data),
        'bytes_read': len(data),
        'file_size': file_size,
        'offset': start
    }


class ChunkWriter:
    """Applies verified chunks to files under a destination root."""

    def __init__(self, root: str, file_mode: int = FILE_MODE, logger: Optional[logging.Logger] = None):
        self.root = root
        self.file_mode = file_mode
        self.logger = logger or logging.getLogger('site_migrator.transfer.chunk')

    def write_chunk(self, path: str, offset: int, data: bytes, checksum: str) -> int:
        """
        Verify and write one chunk.

        Offset 0 truncates and creates the file. A positive offset appends at the
        current end of file; if the file already extends past offset (a chunk
        re-requested after an interruption) it is first cut back to offset.
        The exclusive lock is held until the handle is closed.

        Args:
            path: File path relative to the destination root
            offset: Byte offset this chunk starts at
            data: Raw chunk bytes
            checksum: md5 hex digest supplied by the source

        Returns:
            Number of bytes written

        Raises:
            ChecksumMismatch: If md5(data) != checksum (nothing is written)
            PathViolation: If path escapes the destination root
        """
        full_path = resolve_safe_path(self.root, path)

        actual = md5_hex(data)
        if actual != (checksum or '').lower():
            self.logger.warning(f"Rejected chunk for {path} at offset {offset}: checksum mismatch")
            raise ChecksumMismatch(path, checksum, actual)

        os.makedirs(os.path.dirname(full_path), exist_ok=True)

        mode = 'wb' if offset == 0 else 'ab'
        with open(full_path, mode) as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            if offset > 0:
                current_size = os.fstat(handle.fileno()).st_size
                if current_size > offset:
                    self.logger.info(f"Re-applying chunk for {path}: truncating {current_size} -> {offset}")
                    handle.truncate(offset)
                elif current_size < offset:
                    self.logger.warning(
                        f"Gap before chunk for {path}: file has {current_size} bytes, chunk starts at {offset}"
                    )
                handle.seek(0, os.SEEK_END)
            written = handle.write(data)
            handle.flush()

        os.chmod(full_path, self.file_mode)
        self.logger.debug(f"Wrote {written} bytes to {path} at offset {offset}")
        return written


__all__ = ['md5_hex', 'read_chunk', 'ChunkWriter', 'FILE_MODE']
