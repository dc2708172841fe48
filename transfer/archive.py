"""Zip archive batches for transferring many small files in one request."""

import base64
import io
import logging
import os
import shutil
import zipfile
from typing import Any, Dict, List, Optional

from errors import ChecksumMismatch, PathViolation
from transfer.chunk_transport import FILE_MODE, md5_hex
from transfer.path_safety import resolve_safe_path

logger = logging.getLogger('site_migrator.transfer.archive')


def build_archive(root: str, paths: List[str]) -> Dict[str, Any]:
    """
    Pack files under root into an in-memory zip.

    Unsafe or missing paths are left out and listed under 'skipped'.

    Returns:
        Dictionary with base64 data, md5 checksum of the zip bytes, size,
        file_count (entries actually packed) and skipped paths
    """
    buffer = io.BytesIO()
    added = 0
    skipped = []

    with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
        for path in paths:
            try:
                full_path = resolve_safe_path(root, path)
            except PathViolation as e:
                logger.warning(str(e))
                skipped.append(path)
                continue

            if not os.path.isfile(full_path):
                logger.warning(f"Skipping missing file in batch: {path}")
                skipped.append(path)
                continue

            archive.write(full_path, arcname=path.replace('\\', '/'))
            added += 1

    payload = buffer.getvalue()
    return {
        'data': base64.b64encode(payload).decode('ascii'),
        'checksum': md5_hex(payload),
        'size': len(payload),
        'file_count': added,
        'skipped': skipped
    }


class ArchiveExtractor:
    """Expands archive batches entry by entry under a destination root.

    Unsafe entries (traversal, absolute paths, symlink escapes) and duplicate
    entries are skipped and reported per file; they never abort the batch.
    """

    def __init__(self, root: str, file_mode: int = FILE_MODE, logger: Optional[logging.Logger] = None):
        self.root = root
        self.file_mode = file_mode
        self.logger = logger or logging.getLogger('site_migrator.transfer.archive')

    def extract(self, data: str, checksum: str) -> Dict[str, Any]:
        """
        Verify and extract one archive.

        Args:
            data: Base64-encoded zip bytes
            checksum: md5 hex digest of the zip bytes

        Returns:
            Dictionary with extracted count, extracted file list, and skipped
            entries as {path, reason} plus aggregate unsafe/duplicate counts

        Raises:
            ChecksumMismatch: If the archive digest does not match
            zipfile.BadZipFile: If the payload is not a zip archive
        """
        payload = base64.b64decode(data)
        actual = md5_hex(payload)
        if actual != (checksum or '').lower():
            raise ChecksumMismatch('<archive>', checksum, actual)

        result = {
            'extracted': 0,
            'files': [],
            'skipped': [],
            'unsafe': 0,
            'duplicates': 0
        }
        seen = set()

        with zipfile.ZipFile(io.BytesIO(payload)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue

                name = info.filename.replace('\\', '/')

                if '..' in name.split('/'):
                    self._skip(result, name, 'unsafe', 'path traversal')
                    continue

                try:
                    full_path = resolve_safe_path(self.root, name)
                except PathViolation as e:
                    self._skip(result, name, 'unsafe', e.details.get('reason', 'unsafe path'))
                    continue

                if full_path in seen:
                    self._skip(result, name, 'duplicates', 'duplicate entry')
                    continue
                seen.add(full_path)

                os.makedirs(os.path.dirname(full_path), exist_ok=True)
                with archive.open(info) as source, open(full_path, 'wb') as target:
                    shutil.copyfileobj(source, target)
                os.chmod(full_path, self.file_mode)

                result['extracted'] += 1
                result['files'].append(name)

        if result['skipped']:
            self.logger.warning(
                f"Archive extraction skipped {len(result['skipped'])} entries "
                f"({result['unsafe']} unsafe, {result['duplicates']} duplicates)"
            )
        self.logger.debug(f"Extracted {result['extracted']} files from archive")
        return result

    def _skip(self, result: Dict[str, Any], name: str, counter: str, reason: str) -> None:
        self.logger.warning(f"Skipped archive entry {name}: {reason}")
        result['skipped'].append({'path': name, 'reason': reason})
        result[counter] += 1


__all__ = ['build_archive', 'ArchiveExtractor']
