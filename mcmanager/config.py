import os
import logging
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from mcmanager.backup.compression import (
    DEFAULT_COMPRESSION_LEVEL,
    MIN_COMPRESSION_LEVEL,
    MAX_COMPRESSION_LEVEL,
)
from mcmanager.backup.retention import BYTES_PER_GB

log = logging.getLogger(__name__)

CONFIG_FILE = 'config.toml'
DEFAULT_MANAGER_COMMANDS = ('backup', 'exit')
DEFAULT_WORKERS = 4


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""
    pass


@dataclass(frozen=True)
class GeneralConfig:
    """Manager-wide settings"""
    log_file: str = 'manager.log'
    debug: bool = False


@dataclass(frozen=True)
class ServerConfig:
    """Child process launch and restart policy"""
    java_path: str
    jvm_args: Tuple[str, ...] = ()
    server_args: Tuple[str, ...] = ()
    auto_restart: bool = True
    restart_delay_seconds: float = 10
    stop_command: str = ''
    stop_timeout_seconds: float = 30

    @property
    def command(self) -> Tuple[str, ...]:
        """Full argument vector: executable, JVM args, then server args."""
        return (self.java_path, *self.jvm_args, *self.server_args)


@dataclass(frozen=True)
class BackupConfig:
    """Backup engine and scheduler settings"""
    destination: str
    enabled: bool = True
    interval: str = '1h'
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    sources: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()
    retention_count: int = 0
    max_total_size_bytes: int = 0
    workers: int = DEFAULT_WORKERS
    manager_commands: Tuple[str, ...] = DEFAULT_MANAGER_COMMANDS
    backup_on_start: bool = True


@dataclass(frozen=True)
class Config:
    """Complete, normalised manager configuration"""
    workdir: str
    server: ServerConfig
    backup: BackupConfig
    general: GeneralConfig = field(default_factory=GeneralConfig)


EXAMPLE_CONFIG = """\
[general]
log_file = "manager.log"
debug = false

[server]
# Executable used to launch the server (required)
java_path = "java"
jvm_args = ["-Xms2G", "-Xmx4G"]
server_args = ["-jar", "server.jar", "nogui"]
auto_restart = true
restart_delay_seconds = 10
# Console line sent to the server before it is stopped, e.g. "stop"
stop_command = "stop"
stop_timeout_seconds = 30

[backup]
enabled = true
backup_on_start = true
# Duration such as "30m", "1h", "1h30m"
interval = "1h"
# Console lines handled by the manager instead of the server
manager_commands = ["backup", "exit"]
# Deflate level, 0 (store) to 9 (smallest)
compression_level = 5
sources = ["world", "world_nether", "world_the_end"]
exclusions = ["world/session.lock"]
destination = "backups"
# 0 disables the limit
retention_count = 24
max_total_size_gb = 0
workers = 4
"""


def write_example_config(path: str):
    """Write the bundled example configuration to path."""
    try:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(EXAMPLE_CONFIG)
    except OSError as e:
        raise ConfigError(f"Failed to write example config {path}: {e}")
    log.info(f"Example configuration written to {path}")


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _string_list(section: Dict[str, Any], key: str, section_name: str) -> Tuple[str, ...]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"[{section_name}] {key} must be a list of strings")
    return tuple(value)


def _number(section: Dict[str, Any], key: str, section_name: str, default):
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"[{section_name}] {key} must be a number")
    return value


def _flag(section: Dict[str, Any], key: str, section_name: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"[{section_name}] {key} must be true or false")
    return value


def _resolve(path: str, workdir: str) -> str:
    if not os.path.isabs(path):
        path = os.path.join(workdir, path)
    return os.path.normpath(path)


def parse_config(data: Dict[str, Any], workdir: str) -> Config:
    """
    Build a normalised Config from decoded TOML data.

    Relative source and destination paths are resolved against workdir,
    defaults are filled in and the destination directory is created.

    Raises:
        ConfigError: If a required value is missing or has the wrong type
    """
    general = _section(data, 'general')
    server = _section(data, 'server')
    backup = _section(data, 'backup')

    java_path = server.get('java_path', '')
    if not isinstance(java_path, str) or not java_path.strip():
        raise ConfigError("[server] java_path is required")

    server_config = ServerConfig(
        java_path=os.path.normpath(java_path),
        jvm_args=_string_list(server, 'jvm_args', 'server'),
        server_args=_string_list(server, 'server_args', 'server'),
        auto_restart=_flag(server, 'auto_restart', 'server', True),
        restart_delay_seconds=max(0, _number(server, 'restart_delay_seconds', 'server', 10)),
        stop_command=str(server.get('stop_command', '')),
        stop_timeout_seconds=max(0, _number(server, 'stop_timeout_seconds', 'server', 30)),
    )

    sources = _string_list(backup, 'sources', 'backup') or ('world',)
    destination = backup.get('destination') or 'backups'
    if not isinstance(destination, str):
        raise ConfigError("[backup] destination must be a string")
    destination = _resolve(destination, workdir)

    level = _number(backup, 'compression_level', 'backup', DEFAULT_COMPRESSION_LEVEL)
    if not MIN_COMPRESSION_LEVEL <= level <= MAX_COMPRESSION_LEVEL:
        log.warning(f"Compression level {level} out of range, using {DEFAULT_COMPRESSION_LEVEL}")
        level = DEFAULT_COMPRESSION_LEVEL

    workers = int(_number(backup, 'workers', 'backup', DEFAULT_WORKERS))
    if workers <= 0:
        workers = DEFAULT_WORKERS

    commands = _string_list(backup, 'manager_commands', 'backup') or DEFAULT_MANAGER_COMMANDS

    max_size_gb = _number(backup, 'max_total_size_gb', 'backup', 0)

    backup_config = BackupConfig(
        destination=destination,
        enabled=_flag(backup, 'enabled', 'backup', True),
        interval=str(backup.get('interval', '1h')),
        compression_level=int(level),
        sources=tuple(_resolve(s, workdir) for s in sources),
        exclusions=_string_list(backup, 'exclusions', 'backup'),
        retention_count=max(0, int(_number(backup, 'retention_count', 'backup', 0))),
        max_total_size_bytes=max(0, int(max_size_gb * BYTES_PER_GB)),
        workers=workers,
        manager_commands=tuple(c.strip().lower() for c in commands if c.strip()),
        backup_on_start=_flag(backup, 'backup_on_start', 'backup', True),
    )

    try:
        os.makedirs(destination, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Failed to create backup directory {destination}: {e}")

    general_config = GeneralConfig(
        log_file=str(general.get('log_file', 'manager.log')),
        debug=_flag(general, 'debug', 'general', False),
    )

    return Config(
        workdir=workdir,
        server=server_config,
        backup=backup_config,
        general=general_config,
    )


def load_config(path: Optional[str] = None, workdir: Optional[str] = None) -> Config:
    """
    Load config.toml from disk.

    When the file does not exist an example file is written next to it and
    ConfigError asks the operator to review it.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    if workdir is None:
        workdir = os.getcwd()
    if path is None:
        path = os.path.join(workdir, CONFIG_FILE)

    if not os.path.exists(path):
        example_path = f"{path}.example"
        write_example_config(example_path)
        raise ConfigError(
            f"Configuration file {path} not found. "
            f"Review {example_path}, rename it to {os.path.basename(path)} and start again."
        )

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}")

    return parse_config(data, workdir)
