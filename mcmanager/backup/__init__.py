"""
Backup module for mcmanager.

This module handles the backup functionality including:
- Source collection with glob exclusions
- Concurrent zip compression
- Retention policy enforcement (count and total size)
- Single-flight execution orchestration
"""

from .executor import BackupEngine, BackupRun
from .sources import ExclusionMatcher, collect_files
from .compression import ArchiveBuilder, ArchiveError
from .retention import RetentionPolicy

__all__ = [
    'BackupEngine',
    'BackupRun',
    'ExclusionMatcher',
    'collect_files',
    'ArchiveBuilder',
    'ArchiveError',
    'RetentionPolicy'
]
