"""
Backup executor - orchestrates one backup run.

Workflow:
1. Acquire the single-flight lock (skip if a run is in progress)
2. Collect source files, applying exclusions
3. Build the zip archive with the worker pool
4. Prune old archives (retention count, then total size)
5. Report duration, file count and archive size
"""

import os
import time
import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Set, Tuple

from .sources import ExclusionMatcher, collect_files
from .compression import ArchiveBuilder, ArchiveError, generate_archive_filename, get_archive_size
from .retention import RetentionPolicy

if TYPE_CHECKING:
    from mcmanager.config import BackupConfig

log = logging.getLogger(__name__)

SEPARATOR = '=' * 20


class BackupRun:
    """
    Result of a single backup invocation.

    status is one of 'success', 'skipped', 'empty' or 'failed'.
    """

    def __init__(self, started_at: datetime, reason: str = 'manual'):
        self.started_at = started_at
        self.reason = reason
        self.status = 'running'
        self.archive_path: Optional[str] = None
        self.archive_size: Optional[int] = None
        self.file_count = 0
        self.failed_files: List[Tuple[str, str]] = []
        self.pruned: List[str] = []
        self.duration = 0.0
        self.error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def __repr__(self):
        return f"BackupRun(status={self.status!r}, archive={self.archive_path!r}, files={self.file_count})"


class BackupEngine:
    """
    Runs backups with a single-flight guarantee.

    Concurrent invocations while a run is in progress are dropped, never
    queued.

    Args:
        config: BackupConfig with sources, exclusions and limits
        workdir: Working directory archive entry names are relative to
    """

    def __init__(self, config: 'BackupConfig', workdir: str):
        self.config = config
        self.workdir = workdir
        self.matcher = ExclusionMatcher(config.exclusions, workdir)
        self.builder = ArchiveBuilder(workdir, config.compression_level, config.workers)
        self.retention = RetentionPolicy(
            config.destination,
            retention_count=config.retention_count,
            max_total_size_bytes=config.max_total_size_bytes
        )

        self._lock = threading.Lock()
        self._threads: Set[threading.Thread] = set()
        self._threads_lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def run(self, reason: str = 'scheduled') -> BackupRun:
        """
        Execute one backup run.

        Never raises for backup failures; the outcome is reported on the
        returned BackupRun.
        """
        backup_run = BackupRun(datetime.now(), reason)

        if not self._lock.acquire(blocking=False):
            backup_run.status = 'skipped'
            log.info(f"Backup skipped ({reason}): previous backup has not finished")
            return backup_run

        start = time.monotonic()
        try:
            self._execute(backup_run, start)
        except Exception as e:
            backup_run.status = 'failed'
            backup_run.error = str(e)
            log.exception(f"Backup failed: {e}")
        finally:
            backup_run.duration = time.monotonic() - start
            self._lock.release()

        return backup_run

    def _execute(self, backup_run: BackupRun, start: float):
        log.info(SEPARATOR)
        log.info(f"Backup started ({backup_run.reason})")

        archive_path = os.path.join(
            self.config.destination,
            generate_archive_filename(backup_run.started_at)
        )

        files = collect_files(self.config.sources, self.matcher, skip_dirs=[self.config.destination])
        log.info(f"Found {len(files)} files to back up")

        if not files:
            backup_run.status = 'empty'
            log.info("No files found to back up, skipping archive")
            log.info(SEPARATOR)
            return

        try:
            result = self.builder.build(archive_path, files)
        except ArchiveError as e:
            backup_run.status = 'failed'
            backup_run.error = str(e)
            log.error(f"Failed to create backup archive: {e}")
            log.info(SEPARATOR)
            return

        backup_run.archive_path = archive_path
        backup_run.file_count = result.file_count
        backup_run.failed_files = result.failed

        backup_run.pruned = self.retention.prune()

        backup_run.status = 'success'
        backup_run.archive_size = get_archive_size(archive_path)

        if backup_run.archive_size is not None:
            log.info(
                f"Backup successful: {archive_path} "
                f"({backup_run.archive_size / 1024 / 1024:.2f} MB, {backup_run.file_count} files)"
            )
        else:
            log.info(f"Backup successful: {archive_path} ({backup_run.file_count} files)")

        if result.failed:
            log.warning(f"{len(result.failed)} files could not be added to the archive")

        log.info(f"Backup took {time.monotonic() - start:.1f}s")
        log.info(SEPARATOR)

    def trigger_async(self, reason: str = 'manual') -> threading.Thread:
        """
        Start a backup run on a background thread and return immediately.

        The thread is tracked so join() can wait for it at shutdown.
        """
        thread = threading.Thread(
            target=self._run_tracked,
            args=(reason,),
            name=f"backup-{reason}"
        )
        with self._threads_lock:
            self._threads.add(thread)
        thread.start()
        return thread

    def _run_tracked(self, reason: str):
        try:
            self.run(reason)
        finally:
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    def join(self, timeout: Optional[float] = None):
        """Wait for every backup started with trigger_async() to finish."""
        with self._threads_lock:
            threads = list(self._threads)

        if threads:
            log.info(f"Waiting for {len(threads)} backup task(s) to finish")

        for thread in threads:
            thread.join(timeout)
