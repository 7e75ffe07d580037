import logging
import threading
from typing import Callable, Dict, Iterable, Optional, TextIO

log = logging.getLogger(__name__)


class ConsoleProxy:
    """
    Bridges the operator console to the server's stdin.

    Each input line is compared case-insensitively against the manager
    command keywords. Matching lines go to the registered handler and are
    never forwarded; all other lines are written to the attached server
    channel with a trailing newline.

    One reader thread consumes the input stream. attach() swaps the target
    channel for each server run and only starts a new reader once the
    previous one has stopped.
    """

    def __init__(
        self,
        input_stream: TextIO,
        commands: Iterable[str],
        handlers: Dict[str, Callable[[], None]],
        shutdown_event: threading.Event
    ):
        self.input_stream = input_stream
        self.commands = {c.strip().lower() for c in commands}
        self.handlers = {k.lower(): v for k, v in handlers.items()}
        self.shutdown_event = shutdown_event

        self._channel: Optional[TextIO] = None
        self._channel_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def attach(self, channel: TextIO):
        """Route forwarded lines to channel and make sure a reader is running."""
        with self._channel_lock:
            self._channel = channel
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self.run, name='console-proxy', daemon=True)
                self._thread.start()

    def detach(self):
        """Stop forwarding; lines read until the next attach() are dropped."""
        with self._channel_lock:
            self._channel = None

    def run(self):
        """Read lines until shutdown, end of input, or a failed forward."""
        for raw in iter(self.input_stream.readline, ''):
            if self.shutdown_event.is_set():
                return

            line = raw.rstrip('\r\n')
            if self.dispatch(line):
                continue
            if not self._forward(line):
                return

        log.debug("Console input closed")

    def dispatch(self, line: str) -> bool:
        """
        Handle line if it is a manager command.

        Returns:
            True if the line was consumed as a manager command
        """
        keyword = line.strip().lower()
        if keyword not in self.commands:
            return False

        handler = self.handlers.get(keyword)
        if handler is None:
            log.warning(f"No handler for manager command: {keyword}")
            return True

        log.debug(f"Manager command: {keyword}")
        handler()
        return True

    def send(self, line: str) -> bool:
        """
        Write line to the attached server channel.

        Returns:
            False if no server is attached or the write failed
        """
        with self._channel_lock:
            if self._channel is None:
                return False
            return self._write(self._channel, line)

    def _forward(self, line: str) -> bool:
        """
        Write line to the server.

        Returns:
            False if the write failed because the server is gone
        """
        with self._channel_lock:
            channel = self._channel
            if channel is not None:
                return self._write(channel, line)

        log.warning("Server is not running, console input dropped")
        return True

    @staticmethod
    def _write(channel: TextIO, line: str) -> bool:
        try:
            channel.write(line + '\n')
            channel.flush()
        except (OSError, ValueError) as e:
            log.debug(f"Writing to server stdin failed, stdin closed: {e}")
            return False
        return True
