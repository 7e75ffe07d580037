"""
Retention policy enforcement for backup archives.

Prunes old archives from the destination directory based on the configured
retention count and maximum total size. Only regular files following the
backup-*.zip naming convention are ever considered for deletion.
"""

import os
import logging
from typing import List

from .compression import is_archive_filename

log = logging.getLogger(__name__)

BYTES_PER_GB = 1024 * 1024 * 1024


class ArchiveInfo:
    """An existing backup archive in the destination directory."""

    def __init__(self, name: str, path: str, size: int, modified: float):
        self.name = name
        self.path = path
        self.size = size
        self.modified = modified

    def __repr__(self):
        return f"ArchiveInfo({self.name!r}, size={self.size}, modified={self.modified})"


class RetentionPolicy:
    """
    Decides which existing archives to delete and deletes them.

    Args:
        destination: Directory holding the backup archives
        retention_count: Maximum number of archives to keep (0 = unlimited)
        max_total_size_bytes: Maximum combined archive size (0 = unlimited)
    """

    def __init__(self, destination: str, retention_count: int = 0, max_total_size_bytes: int = 0):
        self.destination = destination
        self.retention_count = retention_count
        self.max_total_size_bytes = max_total_size_bytes

    def list_archives(self) -> List[ArchiveInfo]:
        """
        List backup archives, oldest first by modification time.

        Raises:
            OSError: If the destination directory cannot be read
        """
        archives = []
        with os.scandir(self.destination) as entries:
            for entry in entries:
                if not is_archive_filename(entry.name):
                    continue
                try:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    stat = entry.stat(follow_symlinks=False)
                except OSError as e:
                    log.warning(f"Could not stat archive {entry.path}: {e}")
                    continue
                archives.append(ArchiveInfo(entry.name, entry.path, stat.st_size, stat.st_mtime))

        archives.sort(key=lambda a: (a.modified, a.name))
        return archives

    def prune(self) -> List[str]:
        """
        Apply the count pass and then the size pass.

        Returns:
            Names of deleted archives, in deletion order
        """
        if self.retention_count <= 0 and self.max_total_size_bytes <= 0:
            return []

        try:
            archives = self.list_archives()
        except OSError as e:
            log.error(f"Failed to read backup directory {self.destination}: {e}")
            return []

        if not archives:
            return []

        deleted = []
        archives = self._prune_by_count(archives, deleted)
        self._prune_by_size(archives, deleted)
        return deleted

    def _prune_by_count(self, archives: List[ArchiveInfo], deleted: List[str]) -> List[ArchiveInfo]:
        """
        Delete the oldest archives beyond retention_count.

        Every excess archive is attempted even if an earlier deletion fails.
        Returns the archives that remain under consideration for the size pass.
        """
        if self.retention_count <= 0 or len(archives) <= self.retention_count:
            return archives

        excess = len(archives) - self.retention_count
        log.info(
            f"Found {len(archives)} backups, retention count is {self.retention_count}; "
            f"pruning {excess} oldest"
        )

        for archive in archives[:excess]:
            if self._delete(archive):
                deleted.append(archive.name)
                log.info(f"Pruned old backup (count limit): {archive.name}")

        return archives[excess:]

    def _prune_by_size(self, archives: List[ArchiveInfo], deleted: List[str]):
        """
        Delete oldest archives until the total size is within the limit.

        Stops at the first failed deletion.
        """
        if self.max_total_size_bytes <= 0:
            return

        total = sum(a.size for a in archives)
        if total <= self.max_total_size_bytes:
            return

        log.info(
            f"Backups total {total / BYTES_PER_GB:.2f} GB, exceeding limit of "
            f"{self.max_total_size_bytes / BYTES_PER_GB:.2f} GB; pruning oldest"
        )

        remaining = list(archives)
        while total > self.max_total_size_bytes and remaining:
            archive = remaining[0]
            if not self._delete(archive):
                log.warning("Stopping size-based pruning after failed deletion")
                break
            total -= archive.size
            remaining.pop(0)
            deleted.append(archive.name)
            log.info(f"Pruned old backup (size limit): {archive.name}")

    @staticmethod
    def _delete(archive: ArchiveInfo) -> bool:
        try:
            os.remove(archive.path)
            return True
        except OSError as e:
            log.error(f"Failed to delete backup {archive.path}: {e}")
            return False
