"""
Unit tests for retention policy management (mcmanager/backup/retention.py).

Tests count-based and size-based pruning of backup archives.
"""

import os
from unittest.mock import patch

import pytest

from mcmanager.backup.retention import ArchiveInfo, RetentionPolicy

GB = 1024 * 1024 * 1024


@pytest.fixture
def destination(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return path


def make_archives(destination, count, size=10, base_mtime=1_700_000_000):
    """Create count archives, oldest first, one hour apart."""
    names = []
    for i in range(count):
        name = f'backup-2024-01-{i + 1:02d}_00-00-00.zip'
        path = destination / name
        path.write_bytes(b'x' * size)
        mtime = base_mtime + i * 3600
        os.utime(path, (mtime, mtime))
        names.append(name)
    return names


class TestListArchives:
    """Test archive discovery."""

    def test_sorted_oldest_first_by_mtime(self, destination):
        names = make_archives(destination, 3)
        # Make the newest-named archive the oldest on disk
        os.utime(destination / names[2], (1_600_000_000, 1_600_000_000))

        archives = RetentionPolicy(str(destination)).list_archives()

        assert [a.name for a in archives] == [names[2], names[0], names[1]]

    def test_ignores_files_not_matching_naming_convention(self, destination):
        make_archives(destination, 2)
        (destination / 'notes.txt').write_text('keep me')
        (destination / 'world.zip').write_bytes(b'zip')
        (destination / 'backup-partial.tar.gz').write_bytes(b'tar')
        (destination / 'backup-dir.zip').mkdir()

        archives = RetentionPolicy(str(destination)).list_archives()

        assert len(archives) == 2


class TestRetentionByCount:
    """Test the count pass."""

    def test_keeps_newest_and_deletes_oldest(self, destination):
        names = make_archives(destination, 5)

        deleted = RetentionPolicy(str(destination), retention_count=3).prune()

        assert deleted == names[:2]
        assert sorted(os.listdir(destination)) == sorted(names[2:])

    def test_within_limit_deletes_nothing(self, destination):
        make_archives(destination, 3)

        assert RetentionPolicy(str(destination), retention_count=3).prune() == []
        assert len(os.listdir(destination)) == 3

    def test_zero_means_unlimited(self, destination):
        make_archives(destination, 5)

        assert RetentionPolicy(str(destination), retention_count=0).prune() == []
        assert len(os.listdir(destination)) == 5

    def test_failed_deletion_does_not_block_others(self, destination):
        names = make_archives(destination, 5)
        real_remove = os.remove
        attempts = []

        def flaky_remove(path):
            attempts.append(os.path.basename(path))
            if os.path.basename(path) == names[0]:
                raise PermissionError(13, 'Permission denied', path)
            real_remove(path)

        with patch('mcmanager.backup.retention.os.remove', side_effect=flaky_remove):
            deleted = RetentionPolicy(str(destination), retention_count=2).prune()

        assert attempts == names[:3]
        assert deleted == names[1:3]
        assert names[0] in os.listdir(destination)

    def test_never_touches_other_files(self, destination):
        make_archives(destination, 4)
        (destination / 'server.properties').write_text('motd=hi')

        RetentionPolicy(str(destination), retention_count=1).prune()

        assert sorted(os.listdir(destination)) == ['backup-2024-01-04_00-00-00.zip', 'server.properties']


class TestRetentionBySize:
    """Test the size pass."""

    def test_deletes_oldest_until_within_limit(self, destination):
        # 12 archives of 1 "GB" each against a 10 "GB" limit, scaled to bytes
        names = make_archives(destination, 12, size=100)

        deleted = RetentionPolicy(str(destination), max_total_size_bytes=1000).prune()

        assert deleted == names[:2]
        assert sum(os.path.getsize(destination / n) for n in os.listdir(destination)) <= 1000

    def test_twelve_gb_against_ten_gb_limit(self, destination):
        names = make_archives(destination, 3, size=10)
        policy = RetentionPolicy(str(destination), max_total_size_bytes=10 * GB)
        archives = [
            ArchiveInfo(name, str(destination / name), size, 1_700_000_000 + i)
            for i, (name, size) in enumerate(zip(names, [5 * GB, 4 * GB, 3 * GB]))
        ]

        with patch.object(policy, 'list_archives', return_value=archives):
            deleted = policy.prune()

        assert deleted == [names[0]]
        assert sorted(os.listdir(destination)) == names[1:]

    def test_can_delete_everything(self, destination):
        names = make_archives(destination, 3, size=100)

        deleted = RetentionPolicy(str(destination), max_total_size_bytes=50).prune()

        assert deleted == names
        assert os.listdir(destination) == []

    def test_stops_at_first_failed_deletion(self, destination):
        names = make_archives(destination, 4, size=100)
        real_remove = os.remove
        attempts = []

        def flaky_remove(path):
            attempts.append(os.path.basename(path))
            if os.path.basename(path) == names[1]:
                raise PermissionError(13, 'Permission denied', path)
            real_remove(path)

        with patch('mcmanager.backup.retention.os.remove', side_effect=flaky_remove):
            deleted = RetentionPolicy(str(destination), max_total_size_bytes=100).prune()

        assert attempts == names[:2]
        assert deleted == [names[0]]

    def test_runs_after_count_pass(self, destination):
        names = make_archives(destination, 5, size=100)

        deleted = RetentionPolicy(str(destination), retention_count=4, max_total_size_bytes=250).prune()

        assert deleted == names[:3]
        assert sorted(os.listdir(destination)) == sorted(names[3:])


class TestRetentionErrors:
    """Test directory-level failures."""

    def test_missing_destination_returns_nothing(self, tmp_path):
        policy = RetentionPolicy(str(tmp_path / 'missing'), retention_count=1)

        assert policy.prune() == []

    def test_no_limits_skips_listing(self, destination):
        policy = RetentionPolicy(str(destination))

        with patch.object(policy, 'list_archives') as mock_list:
            assert policy.prune() == []

        mock_list.assert_not_called()
