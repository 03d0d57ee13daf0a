import time
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from botfleet.local import channel
from botfleet.local.supervisor import shutdown
from botfleet.local.supervisor.worker import Launcher, WorkerHandle, WorkerSpec

log = logging.getLogger(__name__)


class ProcessManager:
    """
    Manages the fleet of worker processes, one WorkerHandle per identity.

    Membership is fixed by start_all; handles are only released as a whole by
    shutdown_all. Worker failures never surface here as exceptions, only as
    handle state and the fleet-level kicked notification.
    """

    def __init__(self, notify_kicked: Optional[Callable[[str], None]] = None,
                 launcher: Optional[Launcher] = None, clock: Callable[[], float] = time.monotonic,
                 log_dir: Optional[Path] = None) -> None:
        """
        :param notify_kicked: Called with the worker identity on every ejection.
        :param launcher: Process launcher handed to each WorkerHandle.
        :param clock: Monotonic clock handed to each WorkerHandle.
        :param log_dir: Directory for the per-worker rotating logs.
        """
        self.handles: Dict[str, WorkerHandle] = {}
        self.notify_kicked = notify_kicked
        self.start_time: Optional[float] = None
        self._launcher = launcher
        self._clock = clock
        self._log_dir = log_dir
        self._started = False
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        return self._started

    def _on_worker_kicked(self, identity: str) -> None:
        log.warning(f"Worker '{identity}' was ejected by its environment.")
        if self.notify_kicked is None:
            return
        try:
            self.notify_kicked(identity)
        except Exception as e:
            log.error(f"Kicked-notification callback failed for '{identity}': {e}", exc_info=True)

    def start_all(self, specs: Iterable[WorkerSpec]) -> bool:
        """
        Spawns one worker per spec.

        :param specs: Worker specs; identities must be unique.
        :return: False if the fleet is already active, True otherwise.
        :raises ValueError: If two specs share an identity.
        """
        specs = list(specs)
        identities = [spec.identity for spec in specs]
        duplicates = sorted({i for i in identities if identities.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate worker identities: {', '.join(duplicates)}")

        with self._lock:
            if self._started:
                log.error("Fleet is already running. Use 'stop' first.")
                return False
            self._started = True
            self.start_time = time.time()

            log.info("=" * 20 + f" Starting {len(specs)} workers " + "=" * 20)
            for spec in specs:
                handle = WorkerHandle(
                    spec,
                    notify_kicked=self._on_worker_kicked,
                    launcher=self._launcher,
                    clock=self._clock,
                    log_dir=self._log_dir,
                )
                self.handles[spec.identity] = handle
                handle.start()

        log.info(f"Started workers: {', '.join(identities) or 'none'}")
        return True

    def get(self, identity: str) -> Optional[WorkerHandle]:
        return self.handles.get(identity)

    def send(self, identity: str, message: str) -> bool:
        """Forwards an operator chat message to one worker. Unknown identities are logged and ignored."""
        handle = self.handles.get(identity)
        if handle is None:
            log.warning(f"No worker named '{identity}'; message dropped.")
            return False
        return handle.send(channel.MANUAL_CHAT, message)

    def send_transcription(self, identity: str, transcription: str) -> bool:
        handle = self.handles.get(identity)
        if handle is None:
            log.warning(f"No worker named '{identity}'; transcription dropped.")
            return False
        return handle.send(channel.TRANSCRIPTION, transcription)

    def broadcast_transcription(self, transcription: str) -> int:
        """Sends a transcription to every running worker. Returns how many accepted it."""
        delivered = 0
        for handle in list(self.handles.values()):
            if handle.send(channel.TRANSCRIPTION, transcription):
                delivered += 1
        return delivered

    def shutdown_all(self, timeout: Optional[float] = None) -> None:
        """
        Stops the fleet gracefully and releases all handles.
        Safe to call repeatedly and on an empty or already stopped fleet.

        :param timeout: Grace period before workers are killed.
        """
        with self._lock:
            handles = list(self.handles.values())
            if not handles and not self._started:
                log.debug("Shutdown requested but no fleet is active.")
                return
            log.info("Shutting down gracefully...")
            shutdown.graceful_shutdown_sequence(handles, timeout)
            self.handles = {}
            self._started = False

        if self.start_time:
            log.info(f"Fleet stop sequence completed. Total runtime: {time.strftime('%H:%M:%S', time.gmtime(time.time() - self.start_time))}")
            self.start_time = None
        else:
            log.info("Fleet stop sequence completed.")

    def status(self) -> List[Dict[str, Any]]:
        """Returns one snapshot per worker, in start order."""
        return [handle.snapshot() for handle in list(self.handles.values())]
