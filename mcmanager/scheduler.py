"""
APScheduler configuration for periodic backups.

Manages:
- Parsing the configured backup interval ("30m", "1h30m", ...)
- Firing the backup engine on an interval trigger
- Stopping the timer on shutdown
"""

import re
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from mcmanager.backup.executor import BackupEngine

log = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

_UNIT_SECONDS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'μs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}

_COMPONENT = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string such as "90s", "30m", "1h30m" or "1.5h".

    Args:
        value: Sequence of decimal numbers, each with a unit suffix
            (ns, us, ms, s, m, h)

    Returns:
        Positive timedelta

    Raises:
        ValueError: If the string is malformed or not positive
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    total = 0.0
    pos = 0
    for match in _COMPONENT.finditer(text):
        if match.start() != pos:
            break
        number, unit = match.groups()
        total += float(number) * _UNIT_SECONDS[unit]
        pos = match.end()

    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    if total <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")

    return timedelta(seconds=total)


class BackupScheduler:
    """
    Fires BackupEngine.run on a fixed interval.

    Ticks run on APScheduler's thread pool, so the timer never waits for an
    archive to complete. Overlapping ticks reach the engine, which drops them
    while a backup is in progress.
    """

    def __init__(self, engine: BackupEngine, interval: str):
        self.engine = engine
        self.interval = interval
        self.scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> bool:
        """
        Start the periodic backup timer.

        A malformed interval disables scheduled backups; the rest of the
        manager keeps running.

        Returns:
            True if the timer was started
        """
        if self.running:
            log.info("Backup scheduler already running")
            return True

        try:
            period = parse_duration(self.interval)
        except ValueError as e:
            log.error(f"Invalid backup interval {self.interval!r}, scheduled backups disabled: {e}")
            return False

        executors = {
            'default': ThreadPoolExecutor(max_workers=2)
        }

        job_defaults = {
            'coalesce': True,  # Combine missed ticks into one
            'max_instances': 2,  # Let the engine log overlapping ticks as skipped
            'misfire_grace_time': 60
        }

        self.scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)
        self.scheduler.add_job(
            func=self.engine.run,
            kwargs={'reason': 'scheduled'},
            trigger=IntervalTrigger(seconds=period.total_seconds()),
            id=BACKUP_JOB_ID,
            name='Scheduled Backup',
            replace_existing=True
        )
        self.scheduler.start()

        log.info(f"Scheduled backups enabled, interval: {period}")
        return True

    def stop(self, wait: bool = True):
        """Stop future ticks; with wait=True also wait for running ticks."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            log.info("Backup scheduler stopped")
        self.scheduler = None
