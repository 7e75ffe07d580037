import os
import signal
import logging
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

from mcmanager.config import Config, load_config
from mcmanager.backup.executor import BackupEngine
from mcmanager.scheduler import BackupScheduler
from mcmanager.supervisor import ProcessSupervisor, SupervisorError

__version__ = '1.9.0'

log = logging.getLogger(__name__)


def configure_logging(log_file: str, debug: bool = False):
    """Configure manager logging to the console and a rotating log file"""

    log_dir = os.path.dirname(os.path.abspath(log_file))
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on configuration
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # APScheduler reports every tick at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    log.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


class Manager:
    """
    Wires the supervisor, backup engine and scheduler together and owns the
    shared shutdown event.
    """

    def __init__(self, config: Config):
        self.config = config
        self.shutdown_event = threading.Event()
        self.engine = BackupEngine(config.backup, config.workdir)
        self.scheduler = BackupScheduler(self.engine, config.backup.interval)
        self.supervisor = ProcessSupervisor(
            config,
            engine=self.engine,
            scheduler=self.scheduler,
            shutdown_event=self.shutdown_event
        )

    def _handle_signal(self, signum, frame):
        if not self.shutdown_event.is_set():
            log.info(f"Received {signal.Signals(signum).name}, manager shutting down...")
        self.shutdown_event.set()

    def install_signal_handlers(self):
        """Route SIGINT and SIGTERM to the shutdown event. Main thread only."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def run(self) -> int:
        """
        Run until the server loop ends.

        Returns:
            Process exit code
        """
        self.install_signal_handlers()

        log.info(f"Minecraft Server Manager v{__version__}")
        log.info(f"Backup directory: {self.config.backup.destination}")

        try:
            self.supervisor.run()
        except SupervisorError as e:
            log.error(f"Server supervision failed: {e}")
            return 1

        log.info("Manager stopped")
        return 0


def create_manager(config_path: Optional[str] = None, workdir: Optional[str] = None) -> Manager:
    """
    Manager factory.

    Raises:
        ConfigError: If the configuration cannot be loaded
    """
    config = load_config(config_path, workdir)

    log_file = config.general.log_file
    if not os.path.isabs(log_file):
        log_file = os.path.join(config.workdir, log_file)
    configure_logging(log_file, config.general.debug)

    return Manager(config)
