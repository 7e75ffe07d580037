"""
Shared pytest fixtures for mcmanager tests.

This module provides fixtures for:
- An isolated working directory with sample world data
- Backup and server configuration objects
- A fake server process factory for supervisor tests
- A mocked APScheduler
"""

import io
import os
import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest

from mcmanager.config import BackupConfig, Config, ServerConfig


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Temporary working directory the manager runs in."""
    monkeypatch.chdir(tmp_path)
    return str(tmp_path)


@pytest.fixture
def world_files(workdir):
    """
    Create sample server data.

    Creates:
    - data/level.dat
    - data/cache.tmp (excluded by 'data/*.tmp')
    - data/world/level.dat
    - data/world/region/r.0.0.mca
    - logs/latest.log
    """
    base = os.path.join(workdir, 'data')
    os.makedirs(os.path.join(base, 'world', 'region'))
    os.makedirs(os.path.join(workdir, 'logs'))

    files = {
        'data/level.dat': b'level data',
        'data/cache.tmp': b'temporary',
        'data/world/level.dat': b'world level data',
        'data/world/region/r.0.0.mca': os.urandom(4096),
        'logs/latest.log': b'[Server thread/INFO]: Done',
    }
    for rel, content in files.items():
        with open(os.path.join(workdir, *rel.split('/')), 'wb') as f:
            f.write(content)

    return files


def make_backup_config(workdir, **overrides):
    values = {
        'destination': os.path.join(workdir, 'backups'),
        'sources': (os.path.join(workdir, 'data'),),
        'exclusions': ('data/*.tmp',),
        'workers': 2,
        'interval': '1h',
    }
    values.update(overrides)
    os.makedirs(values['destination'], exist_ok=True)
    return BackupConfig(**values)


def make_config(workdir, server=None, backup=None):
    return Config(
        workdir=workdir,
        server=server or ServerConfig(java_path='java', jvm_args=('-Xmx1G',), server_args=('-jar', 'server.jar')),
        backup=backup or make_backup_config(workdir, enabled=False),
    )


@pytest.fixture
def backup_config(workdir):
    """BackupConfig backing up data/ into backups/, excluding data/*.tmp."""
    return make_backup_config(workdir)


@pytest.fixture
def backup_config_factory(workdir):
    """Build a BackupConfig with overrides on top of the test defaults."""
    return lambda **overrides: make_backup_config(workdir, **overrides)


@pytest.fixture
def config_factory(workdir):
    """Build a full Config from optional ServerConfig/BackupConfig."""
    return lambda server=None, backup=None: make_config(workdir, server, backup)


class FakeStdin(io.StringIO):
    """Server stdin that can stop the fake server when it receives stop_line."""

    def __init__(self, process, stop_line=None):
        super().__init__()
        self.process = process
        self.stop_line = stop_line

    def write(self, s):
        written = super().write(s)
        if self.stop_line is not None and s.strip() == self.stop_line:
            self.process.exit(0)
        return written

    def close(self):
        # Keep the buffer readable for assertions after the supervisor closes it
        self.closed_by_supervisor = True


class FakeProcess:
    """
    Stands in for subprocess.Popen.

    By default the process has already exited with returncode. With
    runs_until_stopped=True it keeps running until terminate(), kill() or the
    stop_line is written to its stdin.
    """

    def __init__(self, returncode=0, runs_until_stopped=False, stop_line=None, ignores_terminate=False):
        self.returncode = None
        self._exit_code = returncode
        self._exited = threading.Event()
        if not runs_until_stopped:
            self._exited.set()
        self._ignores_terminate = ignores_terminate
        self.stdin = FakeStdin(self, stop_line)
        self.terminated = False
        self.killed = False

    def exit(self, code):
        self._exit_code = code
        self._exited.set()

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired('server', timeout)
        self.returncode = self._exit_code
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self._ignores_terminate:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakePopen:
    """Records launches and hands out FakeProcess instances."""

    def __init__(self, *processes, error=None, on_launch=None):
        self.processes = list(processes)
        self.error = error
        self.on_launch = on_launch
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        if self.on_launch is not None:
            self.on_launch(len(self.calls))
        if self.error is not None:
            raise self.error
        if self.processes:
            return self.processes.pop(0)
        return FakeProcess()


@pytest.fixture
def fake_popen():
    """Factory for FakePopen instances."""
    return FakePopen


@pytest.fixture
def fake_process():
    """Factory for FakeProcess instances."""
    return FakeProcess


@pytest.fixture
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('mcmanager.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance
        scheduler_instance.running = False

        def start():
            scheduler_instance.running = True

        scheduler_instance.start.side_effect = start
        yield mock_sched
