"""Enumerates the source content tree into a file manifest."""

import logging
import math
import os
from typing import Iterable, List, Optional, Sequence

from models import DEFAULT_CHUNK_SIZE, FileManifest, FileManifestEntry
from transfer.path_safety import is_path_safe

SCAN_DIRS = ('plugins', 'themes', 'uploads')


class FileScanner:
    """Walks the content root and builds the manifest of transferable files.

    Ordering is deterministic (directories and files sorted by name) so a
    resumed session that re-fetches the manifest sees the same file indexes.
    """

    def __init__(
        self,
        root: str,
        exclude_files: Iterable[str] = (),
        exclude_dirs: Iterable[str] = (),
        exclude_extensions: Iterable[str] = (),
        batch_threshold: int = DEFAULT_CHUNK_SIZE,
        scan_dirs: Sequence[str] = SCAN_DIRS,
        logger: Optional[logging.Logger] = None
    ):
        self.root = os.path.abspath(root)
        self.exclude_files = set(exclude_files)
        self.exclude_extensions = {ext.lower().lstrip('.') for ext in exclude_extensions}
        self.batch_threshold = batch_threshold
        self.scan_dirs = tuple(scan_dirs)
        self.logger = logger or logging.getLogger('site_migrator.transfer.scanner')

        # Multi-part entries such as "uploads/cache" match a run of path components
        self.exclude_dir_parts = [tuple(p for p in d.strip('/').split('/') if p) for d in exclude_dirs]

    @classmethod
    def from_settings(cls, root: str, settings, batch_threshold: int = DEFAULT_CHUNK_SIZE,
                      logger: Optional[logging.Logger] = None) -> 'FileScanner':
        return cls(
            root,
            exclude_files=settings.get('exclude_files'),
            exclude_dirs=settings.get('exclude_dirs'),
            exclude_extensions=settings.get('exclude_extensions'),
            batch_threshold=batch_threshold,
            logger=logger
        )

    def scan(self, include_uploads: bool = True) -> FileManifest:
        """
        Scan the configured directories under the content root.

        Args:
            include_uploads: Whether to include the uploads directory

        Returns:
            FileManifest with entries and aggregate counters
        """
        manifest = FileManifest()
        scan_dirs = [d for d in self.scan_dirs if include_uploads or d != 'uploads']

        for directory in scan_dirs:
            dir_path = os.path.join(self.root, directory)
            if not os.path.isdir(dir_path):
                continue
            self._scan_directory(directory, manifest)

        self.logger.info(
            f"Scanned {manifest.total_count} files ({manifest.total_size} bytes): "
            f"{manifest.large_files} large, {manifest.small_files} small"
        )
        return manifest

    def _scan_directory(self, relative_dir: str, manifest: FileManifest) -> None:
        def on_error(error: OSError) -> None:
            # Unreadable directories are skipped, the rest of the tree is still scanned
            self.logger.warning(f"Error scanning {error.filename}: {error.strerror}")

        start = os.path.join(self.root, relative_dir)
        for current, dirnames, filenames in os.walk(start, onerror=on_error):
            relative_current = os.path.relpath(current, self.root).replace(os.sep, '/')

            dirnames[:] = sorted(
                d for d in dirnames
                if d not in self.exclude_files
                and not self.should_exclude_directory(f"{relative_current}/{d}")
            )

            for filename in sorted(filenames):
                relative_path = f"{relative_current}/{filename}"
                if self.should_exclude_file(filename):
                    continue

                full_path = os.path.join(current, filename)
                # Skip symlinks that lead outside the root and anything that is not a file
                if not os.path.isfile(full_path) or not is_path_safe(self.root, relative_path):
                    continue

                try:
                    stat = os.stat(full_path)
                except OSError as e:
                    self.logger.warning(f"Cannot stat {relative_path}: {e}")
                    continue

                manifest.add(FileManifestEntry(
                    path=relative_path,
                    name=filename,
                    size=stat.st_size,
                    modified=int(stat.st_mtime),
                    is_large=stat.st_size > self.batch_threshold
                ))

    def should_exclude_file(self, filename: str) -> bool:
        if filename in self.exclude_files:
            return True

        _, extension = os.path.splitext(filename)
        return extension.lower().lstrip('.') in self.exclude_extensions

    def should_exclude_directory(self, relative_dir: str) -> bool:
        parts = tuple(p for p in relative_dir.split('/') if p)
        for pattern in self.exclude_dir_parts:
            size = len(pattern)
            if not size:
                continue
            for i in range(len(parts) - size + 1):
                if parts[i:i + size] == pattern:
                    return True
        return False


def create_batches(manifest: FileManifest, max_batch_size: int = DEFAULT_CHUNK_SIZE,
                   max_files: Optional[int] = None) -> List[List[str]]:
    """
    Group small files into archive batches.

    A batch is closed when the next file would push it over max_batch_size,
    or when it already holds max_files entries.
    """
    batches: List[List[str]] = []
    current: List[str] = []
    current_size = 0

    for entry in manifest.files:
        if entry.is_large:
            continue

        over_size = current_size + entry.size > max_batch_size
        over_count = max_files is not None and len(current) >= max_files
        if current and (over_size or over_count):
            batches.append(current)
            current = []
            current_size = 0

        current.append(entry.path)
        current_size += entry.size

    if current:
        batches.append(current)

    return batches


def calculate_chunks(file_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    return int(math.ceil(file_size / float(chunk_size)))


def build_manifest(scanner: FileScanner, chunk_size: int = DEFAULT_CHUNK_SIZE,
                   max_files_per_batch: Optional[int] = None,
                   include_uploads: bool = True) -> FileManifest:
    """Scan and fill in the batch and chunk aggregates."""
    manifest = scanner.scan(include_uploads=include_uploads)
    large = manifest.large_entries()

    manifest.batches = len(create_batches(manifest, scanner.batch_threshold, max_files_per_batch))
    manifest.large_files_count = len(large)
    manifest.total_chunks = sum(calculate_chunks(entry.size, chunk_size) for entry in large)
    return manifest


def format_size(num_bytes: float, decimals: int = 2) -> str:
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    num_bytes = max(num_bytes, 0)
    power = 0 if num_bytes == 0 else min(int(math.log(num_bytes, 1024)), len(units) - 1)
    return f"{round(num_bytes / (1024 ** power), decimals)} {units[power]}"


__all__ = ['FileScanner', 'create_batches', 'calculate_chunks', 'build_manifest', 'format_size', 'SCAN_DIRS']
