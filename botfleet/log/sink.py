import logging
import threading
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

from botfleet import settings

log = logging.getLogger(__name__)


class LogSink:
    """
    Append-only, size-rotated destination for one spawn of a worker.

    Output lines go through the ``proc.<identity>`` logger so they can be echoed
    to the console by the root handlers when ECHO_WORKER_OUTPUT is on. The file
    itself persists across spawns; every spawn opens and closes its own handler.
    """

    def __init__(self, identity: str, log_dir: Optional[Path] = None,
                 max_bytes: Optional[int] = None, backup_count: Optional[int] = None) -> None:
        self.identity = identity
        self.path = Path(log_dir or settings.RUNLOGS_DIR) / f"{identity}.log"
        self.max_bytes = max_bytes if max_bytes is not None else settings.WORKER_LOG_MAX_BYTES
        self.backup_count = backup_count if backup_count is not None else settings.LOG_BACKUP_COUNT
        self.logger = logging.getLogger(f"proc.{identity}")
        self._handler: Optional[RotatingFileHandler] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._handler is not None

    def open(self, header: Optional[str] = None) -> None:
        """
        Opens the rotating file handler and attaches it to the worker logger.

        :param header: Optional first line for this run (e.g. the spawn arguments).
        """
        with self._lock:
            if self._handler is not None:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                self.path,
                mode="a",
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
            self.logger.setLevel(logging.DEBUG)
            self.logger.propagate = settings.ECHO_WORKER_OUTPUT
            self.logger.addHandler(handler)
            self._handler = handler
        log.debug(f"Log sink for '{self.identity}' opened at {self.path}")
        if header:
            self.write(header)

    def write(self, line: str, level: int = logging.INFO) -> None:
        """Appends one line. Lines written after close are dropped."""
        with self._lock:
            if self._handler is None:
                return
            self.logger.log(level, line)

    def close(self) -> None:
        """Flushes and detaches the handler. Safe to call more than once."""
        with self._lock:
            handler, self._handler = self._handler, None
            if handler is None:
                return
            self.logger.removeHandler(handler)
            handler.flush()
            handler.close()
        log.debug(f"Log sink for '{self.identity}' closed.")
