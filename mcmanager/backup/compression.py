"""
Zip archive creation for backup runs.

Files are compressed by a fixed pool of worker threads into a single zip
archive. The zip format is written strictly sequentially, so each entry's
header and content are written while holding the writer lock; opening and
stat-ing source files happen outside it.
"""

import os
import shutil
import logging
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional, Tuple

from .sources import archive_name

log = logging.getLogger(__name__)

ARCHIVE_PREFIX = 'backup-'
ARCHIVE_SUFFIX = '.zip'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

MIN_COMPRESSION_LEVEL = 0
MAX_COMPRESSION_LEVEL = 9
DEFAULT_COMPRESSION_LEVEL = 5

COPY_BUFFER_SIZE = 1024 * 1024


class ArchiveError(Exception):
    """Raised when the archive file cannot be created or finalised."""
    pass


def generate_archive_filename(timestamp: Optional[datetime] = None) -> str:
    """
    Generate the archive filename for a backup started at timestamp.

    Format: backup-{YYYY-MM-DD_HH-MM-SS}.zip in local time
    """
    if timestamp is None:
        timestamp = datetime.now()
    return f"{ARCHIVE_PREFIX}{timestamp.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def is_archive_filename(filename: str) -> bool:
    """Check whether filename follows the backup-*.zip naming convention."""
    return filename.startswith(ARCHIVE_PREFIX) and filename.endswith(ARCHIVE_SUFFIX)


def get_archive_size(archive_path: str) -> Optional[int]:
    """Return the archive size in bytes, or None if it cannot be read."""
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        log.debug(f"Could not stat archive {archive_path}: {e}")
        return None


class BuildResult:
    """Outcome of one archive build."""

    def __init__(self, archive_path: str):
        self.archive_path = archive_path
        self.entries: List[str] = []
        self.failed: List[Tuple[str, str]] = []

    @property
    def file_count(self) -> int:
        return len(self.entries)


class ArchiveBuilder:
    """
    Concurrent zip writer.

    Args:
        workdir: Directory entry names are made relative to
        compression_level: Deflate level, 0-9
        workers: Number of worker threads (at least 1)
    """

    def __init__(self, workdir: str, compression_level: int = DEFAULT_COMPRESSION_LEVEL, workers: int = 4):
        if not MIN_COMPRESSION_LEVEL <= compression_level <= MAX_COMPRESSION_LEVEL:
            raise ValueError(
                f"Invalid compression level: {compression_level}. "
                f"Valid range: {MIN_COMPRESSION_LEVEL}-{MAX_COMPRESSION_LEVEL}"
            )
        if workers < 1:
            raise ValueError(f"Worker count must be at least 1, got {workers}")

        self.workdir = workdir
        self.compression_level = compression_level
        self.workers = workers

    def build(self, archive_path: str, files: List[str]) -> BuildResult:
        """
        Compress files into a new archive at archive_path.

        A file that cannot be read is logged and left out; it does not abort
        the archive.

        Returns:
            BuildResult with the written entry names and failed files

        Raises:
            ArchiveError: If the archive file cannot be created, written or
                closed. Any partially written archive is removed.
        """
        result = BuildResult(archive_path)
        writer_lock = threading.Lock()

        try:
            zipf = zipfile.ZipFile(
                archive_path, 'w',
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compression_level
            )
        except OSError as e:
            self._remove_partial(archive_path)
            raise ArchiveError(f"Failed to create archive {archive_path}: {e}")

        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='archive-worker') as pool:
                outcomes = pool.map(
                    lambda path: self._add_file(zipf, path, writer_lock),
                    files
                )
                for path, name, error in outcomes:
                    if error is None:
                        result.entries.append(name)
                    else:
                        log.error(f"Failed to add {path} to archive: {error}")
                        result.failed.append((path, error))
        except Exception as e:
            self._abort(zipf, archive_path)
            raise ArchiveError(f"Failed to write archive {archive_path}: {e}") from e

        try:
            zipf.close()
        except OSError as e:
            self._remove_partial(archive_path)
            raise ArchiveError(f"Failed to finalise archive {archive_path}: {e}")

        return result

    def _add_file(self, zipf: zipfile.ZipFile, path: str, writer_lock: threading.Lock) -> Tuple[str, str, Optional[str]]:
        """
        Write one file into the archive.

        Modification times before 1980 are stored as 1980-01-01.

        Returns:
            (path, entry name, error message or None)
        """
        name = archive_name(path, self.workdir)

        try:
            with open(path, 'rb') as src:
                info = zipfile.ZipInfo.from_file(path, name, strict_timestamps=False)
                info.compress_type = zipfile.ZIP_DEFLATED
                # ZipFile.open(info, 'w') reads the per-entry level from the ZipInfo
                if hasattr(info, 'compress_level'):
                    info.compress_level = self.compression_level
                else:
                    info._compresslevel = self.compression_level

                with writer_lock:
                    with zipf.open(info, 'w') as dest:
                        shutil.copyfileobj(src, dest, COPY_BUFFER_SIZE)
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            return path, name, str(e)

        return path, name, None

    def _abort(self, zipf: zipfile.ZipFile, archive_path: str):
        """Close and delete an archive whose build failed."""
        try:
            zipf.close()
        except (OSError, ValueError) as e:
            log.debug(f"Closing aborted archive {archive_path} failed: {e}")
        self._remove_partial(archive_path)

    @staticmethod
    def _remove_partial(archive_path: str):
        """Delete a partially written archive if one exists."""
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError as e:
                log.warning(f"Failed to remove partial archive {archive_path}: {e}")
