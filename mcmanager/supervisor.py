import sys
import signal
import logging
import threading
import subprocess
from enum import Enum
from typing import Callable, Optional, TextIO

from mcmanager.config import Config
from mcmanager.console import ConsoleProxy
from mcmanager.backup.executor import BackupEngine
from mcmanager.scheduler import BackupScheduler

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
KILL_TIMEOUT = 10


class SupervisorError(Exception):
    """Raised when a server run cannot be supervised at all."""
    pass


class SupervisorState(Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    RESTART_DELAY = 'restart_delay'
    TERMINATED = 'terminated'


def request_exit():
    """Deliver SIGINT to this process, same as pressing Ctrl+C."""
    signal.raise_signal(signal.SIGINT)


class ProcessSupervisor:
    """
    Keeps the server process alive and coordinates backups around it.

    The run loop is an explicit state machine:
    STARTING -> RUNNING -> (RESTART_DELAY -> STARTING)* -> TERMINATED.
    Setting shutdown_event stops the server, skips any restart and
    interrupts a pending restart delay.
    """

    def __init__(
        self,
        config: Config,
        engine: Optional[BackupEngine] = None,
        scheduler: Optional[BackupScheduler] = None,
        shutdown_event: Optional[threading.Event] = None,
        input_stream: Optional[TextIO] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        on_exit: Callable[[], None] = request_exit
    ):
        self.config = config
        self.engine = engine
        self.scheduler = scheduler
        self.shutdown_event = shutdown_event or threading.Event()
        self.popen = popen

        handlers = {'exit': on_exit}
        if engine is not None:
            handlers['backup'] = self._manual_backup

        self.console = ConsoleProxy(
            input_stream if input_stream is not None else sys.stdin,
            config.backup.manager_commands,
            handlers,
            self.shutdown_event
        )

        self.state = SupervisorState.IDLE
        self.process: Optional[subprocess.Popen] = None
        self.launches = 0
        self.last_returncode: Optional[int] = None

    def run(self):
        """
        Supervise the server until shutdown or until restarts stop.

        Before returning, the backup scheduler is stopped and outstanding
        backup work is awaited.
        """
        try:
            if self.engine is not None and self.config.backup.enabled and self.config.backup.backup_on_start:
                self.engine.run(reason='startup')

            if self.scheduler is not None and self.config.backup.enabled:
                self.scheduler.start()

            self.state = SupervisorState.STARTING
            while self.state is not SupervisorState.TERMINATED:
                if self.state is SupervisorState.STARTING:
                    self.state = self._start_server()
                elif self.state is SupervisorState.RUNNING:
                    self.state = self._wait_for_exit()
                elif self.state is SupervisorState.RESTART_DELAY:
                    self.state = self._restart_delay()
        finally:
            self.state = SupervisorState.TERMINATED
            if self.scheduler is not None:
                self.scheduler.stop(wait=True)
            if self.engine is not None:
                self.engine.join()

    def _manual_backup(self):
        log.info("Manual backup requested")
        self.engine.trigger_async(reason='manual')

    def _start_server(self) -> SupervisorState:
        if self.shutdown_event.is_set():
            return SupervisorState.TERMINATED

        server = self.config.server
        log.info("Starting server...")
        log.debug(f"Server command: {' '.join(server.command)}")

        try:
            process = self.popen(
                list(server.command),
                cwd=self.config.workdir,
                stdin=subprocess.PIPE,
                stdout=None,
                stderr=None,
                text=True,
                encoding='utf-8',
                bufsize=1
            )
        except (OSError, ValueError) as e:
            log.error(f"Failed to start server: {e}")
            if not server.auto_restart:
                return SupervisorState.TERMINATED
            return SupervisorState.RESTART_DELAY

        self.launches += 1

        if process.stdin is None:
            process.kill()
            raise SupervisorError("Could not open server stdin")

        self.process = process
        self.console.attach(process.stdin)
        return SupervisorState.RUNNING

    def _wait_for_exit(self) -> SupervisorState:
        process = self.process
        stopping = False

        while True:
            try:
                returncode = process.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if self.shutdown_event.is_set() and not stopping:
                    stopping = True
                    self._stop_server(process)

        self.console.detach()
        self._close_stdin(process)
        self.process = None
        self.last_returncode = returncode

        if self.shutdown_event.is_set():
            log.info("Server process terminated")
            return SupervisorState.TERMINATED

        if returncode != 0:
            log.warning(f"Server process exited with error (exit code {returncode})")
        else:
            log.info("Server process exited normally")

        if not self.config.server.auto_restart:
            log.info("Auto restart disabled, manager will stop")
            return SupervisorState.TERMINATED

        return SupervisorState.RESTART_DELAY

    def _restart_delay(self) -> SupervisorState:
        delay = self.config.server.restart_delay_seconds
        log.info(f"Restarting server in {delay} seconds...")

        if self.shutdown_event.wait(delay):
            log.info("Restart cancelled, manager is shutting down")
            return SupervisorState.TERMINATED

        return SupervisorState.STARTING

    def _stop_server(self, process: subprocess.Popen):
        """
        Stop the server: stop command, then terminate, then kill.

        Each step waits for the process before escalating.
        """
        server = self.config.server

        if server.stop_command:
            log.info(f"Sending stop command to server: {server.stop_command}")
            if self.console.send(server.stop_command):
                try:
                    process.wait(timeout=server.stop_timeout_seconds)
                    return
                except subprocess.TimeoutExpired:
                    log.warning(f"Server did not stop within {server.stop_timeout_seconds}s")
            else:
                log.debug("Could not send stop command, server stdin unavailable")

        log.info("Terminating server process")
        process.terminate()
        try:
            process.wait(timeout=KILL_TIMEOUT)
        except subprocess.TimeoutExpired:
            log.warning("Server did not terminate, killing it")
            process.kill()

    @staticmethod
    def _close_stdin(process: subprocess.Popen):
        if process.stdin is None:
            return
        try:
            process.stdin.close()
        except OSError as e:
            log.debug(f"Closing server stdin failed: {e}")
