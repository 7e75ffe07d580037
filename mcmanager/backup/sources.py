"""
Source collection for backup runs.

Walks the configured source roots and returns the list of files that should
go into an archive:
- ExclusionMatcher: glob filter applied to working-directory-relative paths
- collect_files: recursive enumeration of every source root
- archive_name: archive-relative entry name for a collected file
"""

import os
import logging
from fnmatch import fnmatchcase
from typing import List, Optional, Sequence

log = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when a source root cannot be enumerated."""
    pass


def relative_path(path: str, workdir: str) -> Optional[str]:
    """
    Express path relative to workdir using forward slashes.

    Returns None when the path cannot be made relative (for example it lives
    on another drive) or when it falls outside workdir.
    """
    try:
        rel = os.path.relpath(path, workdir)
    except ValueError:
        return None

    rel = rel.replace(os.sep, '/')
    if rel == '..' or rel.startswith('../'):
        return None
    return rel


def archive_name(path: str, workdir: str) -> str:
    """
    Compute the archive-relative entry name for a file.

    Args:
        path: Absolute path of the source file
        workdir: Working directory the archive layout is anchored to

    Returns:
        POSIX-style relative path, or the file's base name when the file
        is outside workdir
    """
    rel = relative_path(path, workdir)
    if rel is None:
        return os.path.basename(path)
    return rel


class ExclusionMatcher:
    """
    Glob filter for backup paths.

    Patterns are matched segment by segment against the slash-normalised
    path relative to the working directory, so '*', '?' and '[...]' never
    cross a '/'. Patterns are tried in configured order and the first match
    wins.
    """

    def __init__(self, patterns: Sequence[str], workdir: str):
        self.patterns = [p.replace('\\', '/') for p in patterns if p]
        self.workdir = workdir
        self._split = [p.split('/') for p in self.patterns]

    def match(self, rel_path: str) -> Optional[str]:
        """Return the first pattern matching rel_path, or None."""
        parts = rel_path.split('/')
        for pattern, segments in zip(self.patterns, self._split):
            if len(segments) != len(parts):
                continue
            if all(fnmatchcase(part, seg) for part, seg in zip(parts, segments)):
                return pattern
        return None

    def is_excluded(self, path: str) -> bool:
        """
        Check whether an absolute path is excluded.

        Paths that cannot be made relative to the working directory are
        matched using their normalised absolute form.
        """
        if not self.patterns:
            return False

        rel = relative_path(path, self.workdir)
        if rel is None:
            rel = path.replace(os.sep, '/')
        return self.match(rel) is not None


def _walk_root(root: str, matcher: ExclusionMatcher, skip_dirs: Sequence[str]) -> List[str]:
    """
    Enumerate files under a single root.

    Raises:
        FileNotFoundError: If the root does not exist
        SourceError: If any part of the tree cannot be listed
    """
    if not os.path.exists(root):
        raise FileNotFoundError(root)

    if os.path.isfile(root):
        return [] if matcher.is_excluded(root) else [root]

    def on_error(err: OSError):
        raise SourceError(f"Error traversing {err.filename or root}: {err}")

    skipped = {os.path.normcase(os.path.abspath(d)) for d in skip_dirs}
    files = []

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        kept = []
        for name in dirnames:
            full = os.path.join(dirpath, name)
            if os.path.normcase(os.path.abspath(full)) in skipped:
                log.debug(f"Skipping backup destination inside source: {full}")
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            if matcher.is_excluded(full):
                continue
            files.append(full)

    return files


def collect_files(
    sources: Sequence[str],
    matcher: ExclusionMatcher,
    skip_dirs: Sequence[str] = ()
) -> List[str]:
    """
    Collect every non-excluded file below the given source roots.

    A missing root is reported and skipped. Any other enumeration error
    drops that root's contribution while the remaining roots are still
    collected.

    Args:
        sources: Absolute source roots (directories or single files)
        matcher: Exclusion filter
        skip_dirs: Directories never descended into (the backup destination)

    Returns:
        List of absolute file paths, without duplicates
    """
    files = []
    seen = set()

    for root in sources:
        try:
            found = _walk_root(root, matcher, skip_dirs)
        except FileNotFoundError:
            log.warning(f"Backup source not found, skipping: {root}")
            continue
        except (SourceError, OSError) as e:
            log.error(f"Failed to collect files from {root}: {e}")
            continue

        for path in found:
            if path not in seen:
                seen.add(path)
                files.append(path)

    return files
