"""
Archive writer for backup manifests.

Supports multiple formats:
- zip: Standard zip compression (default)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- tar: No compression

Entries are streamed from disk in chunks; the archive is never held in memory.
"""

import os
import shutil
import logging
import tarfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from .selection import is_within, normalize_path

logger = logging.getLogger(__name__)

FILENAME_TIMESTAMP_FORMAT = '%Y-%m-%d-%H-%M-%S'
CHUNK_SIZE = 1024 * 1024

# Map format to extension and tarfile mode (None for zip)
FORMATS = {
    'zip': ('zip', None),
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'tar': ('tar', 'w'),
}


class ArchiveWriteFailure(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass(frozen=True)
class ArchiveResult:
    path: str
    entry_count: int
    size: int
    skipped: Tuple[str, ...] = ()

    @property
    def human_readable_size(self) -> str:
        return human_readable_size(self.size)


def archive_extension(archive_format: str) -> str:
    """
    Raises:
        ValueError: If archive_format is invalid
    """
    if archive_format not in FORMATS:
        raise ValueError(
            f"Invalid archive format: {archive_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )
    return FORMATS[archive_format][0]


class ArchiveWriter:
    """
    Streams manifest entries into a single archive.

    Files inside relative_to (the job workspace) are stored relative to it,
    e.g. db-dumps/mysql-app-mysql.sql.gz; every other file is stored under
    its absolute path without the leading root, so extraction rebuilds the
    original tree.
    """

    def __init__(self, archive_path: str, archive_format: str = 'zip', relative_to: Optional[str] = None):
        archive_extension(archive_format)
        self.archive_path = archive_path
        self.archive_format = archive_format
        self.relative_to = normalize_path(relative_to) if relative_to else None

    def archive_name_for(self, path: str) -> str:
        normalized = normalize_path(path)
        if self.relative_to and is_within(normalized, self.relative_to) and normalized != self.relative_to:
            relative = os.path.relpath(normalized, self.relative_to)
        else:
            relative = str(Path(normalized).relative_to(Path(normalized).anchor))
        return Path(relative).as_posix()

    def write(self, entries: Iterable[str]) -> ArchiveResult:
        """
        Write every entry into the archive.

        Directories are recursed file by file. Entries that cannot be read or
        have disappeared are skipped with a warning.

        Returns:
            ArchiveResult with entry count and archive size

        Raises:
            ArchiveWriteFailure: If the archive itself cannot be written
        """
        entry_count = 0
        skipped: List[str] = []

        try:
            with self._open() as add:
                for entry in entries:
                    for file_path in self._expand(entry, skipped):
                        if add(file_path, self.archive_name_for(file_path)):
                            entry_count += 1
                        else:
                            skipped.append(file_path)

            size = os.path.getsize(self.archive_path)
        except Exception as e:
            # Clean up partial archive on failure
            if os.path.exists(self.archive_path):
                try:
                    os.remove(self.archive_path)
                except OSError:
                    logger.warning(f"Could not remove partial archive {self.archive_path}")
            raise ArchiveWriteFailure(f"Failed to create archive: {e}")

        return ArchiveResult(self.archive_path, entry_count, size, tuple(skipped))

    def _expand(self, entry: str, skipped: List[str]) -> Iterator[str]:
        path = Path(entry)

        if path.is_dir():
            def on_error(error: OSError):
                logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")
                skipped.append(error.filename)

            for current, dirnames, filenames in os.walk(path, onerror=on_error):
                dirnames.sort()
                for name in sorted(filenames):
                    yield os.path.join(current, name)
        elif path.is_file():
            yield str(path)
        else:
            logger.warning(f"Skipping missing entry: {entry}")
            skipped.append(entry)

    def _open(self):
        if self.archive_format == 'zip':
            return _ZipAdder(self.archive_path)
        return _TarAdder(self.archive_path, FORMATS[self.archive_format][1])


class _ZipAdder:
    """Context manager returning add(path, arcname) -> bool for a zip archive."""

    def __init__(self, archive_path: str):
        self.archive_path = archive_path
        self.zipf = None

    def __enter__(self):
        self.zipf = zipfile.ZipFile(self.archive_path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True)
        return self.add

    def __exit__(self, exc_type, exc, tb):
        self.zipf.close()
        return False

    def add(self, path: str, arcname: str) -> bool:
        source = _open_source(path)
        if source is None:
            return False

        with source:
            zinfo = zipfile.ZipInfo.from_file(path, arcname)
            zinfo.compress_type = zipfile.ZIP_DEFLATED
            with self.zipf.open(zinfo, 'w') as dest:
                shutil.copyfileobj(source, dest, CHUNK_SIZE)
        return True


class _TarAdder:
    """Context manager returning add(path, arcname) -> bool for a tar archive."""

    def __init__(self, archive_path: str, mode: str):
        self.archive_path = archive_path
        self.mode = mode
        self.tar = None

    def __enter__(self):
        self.tar = tarfile.open(self.archive_path, self.mode)
        return self.add

    def __exit__(self, exc_type, exc, tb):
        self.tar.close()
        return False

    def add(self, path: str, arcname: str) -> bool:
        source = _open_source(path)
        if source is None:
            return False

        with source:
            tarinfo = self.tar.gettarinfo(arcname=arcname, fileobj=source)
            self.tar.addfile(tarinfo, source)
        return True


def _open_source(path: str):
    """Open a manifest file for reading, or None if it vanished or is unreadable."""
    try:
        return open(path, 'rb')
    except OSError as e:
        logger.warning(f"Skipping unreadable file {path}: {e}")
        return None


def generate_archive_filename(archive_format: str = 'zip', now: Optional[datetime] = None) -> str:
    """
    Generate the default archive filename.

    Format: {YYYY-MM-DD-HH-mm-ss}.{ext}
    """
    timestamp = (now or datetime.now()).strftime(FILENAME_TIMESTAMP_FORMAT)
    return f"{timestamp}.{archive_extension(archive_format)}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    for extension, _ in sorted(FORMATS.values(), key=lambda item: -len(item[0])):
        if filename.endswith('.' + extension):
            return filename[:-(len(extension) + 1)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def insert_filename_marker(filename: str, marker: str) -> str:
    """
    Insert a marker segment before the archive extension.

    2024-01-15-02-00-00.zip -> 2024-01-15-02-00-00.sanitized.zip
    """
    base = strip_archive_extension(filename)
    extension = filename[len(base):]
    if base.endswith('.' + marker):
        return filename
    return f"{base}.{marker}{extension}"


def human_readable_size(size: int) -> str:
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if value < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"
