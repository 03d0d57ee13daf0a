"""
Worker handle: one supervised child process and its restart bookkeeping.

State transitions only happen in start() and in the exit observer, which runs
on a per-spawn watcher thread once the OS reports the process gone. Both hold
the handle lock, so transitions of a single handle are strictly sequential.
"""
import time
import logging
import threading
import dataclasses
from enum import Enum
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from botfleet import settings
from botfleet.log.sink import LogSink
from botfleet.local import channel
from botfleet.local.supervisor import policy, process_utils

log = logging.getLogger(__name__)

Launcher = Callable[["WorkerSpec", LogSink], Tuple[Any, List[threading.Thread]]]


@dataclass(frozen=True)
class WorkerSpec:
    """Resolved arguments for one worker. Never mutated once built."""
    identity: str
    profile_path: Path
    user_data_dir: Path
    app_path: Path
    credential: Optional[str] = None
    load_memory: bool = False

    def __post_init__(self):
        if not self.identity:
            raise ValueError("Worker identity cannot be empty")


class WorkerState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    TERMINATED = "terminated"
    CIRCUIT_OPEN = "circuit-open"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkerState.TERMINATED, WorkerState.CIRCUIT_OPEN)


class WorkerHandle:
    """
    Owns one worker process at a time, its log sink and its restart counter.

    :param spec: The worker's spec.
    :param notify_kicked: Called with the identity when the worker is ejected.
    :param launcher: Spawns the process; defaults to process_utils.launch_worker.
    :param clock: Monotonic clock in seconds.
    :param log_dir: Directory for the worker's rotating log.
    """

    def __init__(self, spec: WorkerSpec, notify_kicked: Optional[Callable[[str], None]] = None,
                 launcher: Optional[Launcher] = None, clock: Callable[[], float] = time.monotonic,
                 log_dir: Optional[Path] = None) -> None:
        self.spec = spec
        self.identity = spec.identity
        self.state = WorkerState.STARTING
        self.process = None
        self.restart_count = 0
        self.last_restart_time = clock()
        self.reason: Optional[str] = None
        self.log_sink: Optional[LogSink] = None
        self._notify_kicked = notify_kicked
        self._launcher = launcher or process_utils.launch_worker
        self._clock = clock
        self._log_dir = log_dir
        self._stop_requested = False
        self._started = False
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._done = threading.Event()

    def __repr__(self) -> str:
        return f"<WorkerHandle {self.identity} state={self.state.value} restarts={self.restart_count}>"

    #* --- Lifecycle ---
    def start(self) -> None:
        """Spawns the worker. A handle is started once; later calls are ignored."""
        with self._lock:
            if self._started or self.state.is_terminal:
                log.debug(f"Worker '{self.identity}' already started or stopped; ignoring start request.")
                return
            self._started = True
            self._spawn(self.spec)

    def _spawn(self, spec: WorkerSpec) -> None:
        """Opens a fresh sink and launches the process. Caller holds the lock."""
        self.state = WorkerState.STARTING
        sink = LogSink(self.identity, log_dir=self._log_dir)
        self.log_sink = sink
        try:
            sink.open()
            process, readers = self._launcher(spec, sink)
        except (OSError, ValueError, TypeError) as e:
            # Popen raises ValueError/TypeError for unusable argv or env values.
            log.error(f"Failed to start worker '{self.identity}': {e}", exc_info=True)
            sink.write(f"Failed to start agent process: {e}", logging.ERROR)
            sink.close()
            self._settle(WorkerState.TERMINATED, "spawn error")
            return

        self.process = process
        self.last_restart_time = self._clock()
        self.state = WorkerState.RUNNING
        threading.Thread(
            target=self._watch,
            args=(process, readers),
            daemon=True,
            name=f"{self.identity}-watcher",
        ).start()

    def _watch(self, process, readers: List[threading.Thread]) -> None:
        """Blocks until the process is gone, lets the readers drain, then runs the exit observer."""
        returncode = process.wait()
        for reader in readers:
            reader.join(timeout=settings.PIPE_DRAIN_TIMEOUT)
        # Outside the handle lock: a pending send may still hold the pipe until it fails.
        _close_channel(process)
        self._on_exit(process, returncode)

    def _on_exit(self, process, returncode: Optional[int]) -> None:
        kicked = False
        with self._lock:
            if process is not self.process:
                log.debug(f"Ignoring stale exit notification for worker '{self.identity}'.")
                return
            self.process = None
            self.state = WorkerState.EXITED

            sig = policy.exit_signal(returncode)
            code = None if sig else returncode
            cause = policy.classify_exit(returncode, self._stop_requested)
            decision = policy.decide_restart(cause, self.restart_count, self.last_restart_time, self._clock())
            self.restart_count = decision.restart_count

            summary = (f"Agent process exited with code {code} and signal {sig}; "
                       f"cause={cause.value} decision={decision.action.value} reason={decision.reason} "
                       f"restarts={decision.restart_count}")
            log.info(f"Worker '{self.identity}': {summary}")
            sink = self.log_sink
            if sink is not None:
                sink.write(summary)
                sink.close()

            if decision.should_restart:
                log.warning(f"Restarting worker '{self.identity}' (attempt {decision.restart_count}) with memory reload.")
                self.state = WorkerState.RESTARTING
                # Crash respawns always reload memory, regardless of spec.load_memory.
                self._spawn(dataclasses.replace(self.spec, load_memory=True))
            elif decision.circuit_open:
                log.critical(f"Worker '{self.identity}' hit the restart limit. Not restarting; manual intervention required.")
                self._settle(WorkerState.CIRCUIT_OPEN, decision.reason)
            else:
                if cause is policy.ExitCause.EJECTED:
                    log.warning(f"Worker '{self.identity}' was ejected. Not restarting.")
                    kicked = True
                self._settle(WorkerState.TERMINATED, decision.reason)

        if kicked and self._notify_kicked is not None:
            self._notify_kicked(self.identity)

    def _settle(self, state: WorkerState, reason: str) -> None:
        self.state = state
        self.reason = reason
        self._done.set()

    #* --- Operations ---
    def send(self, message_type: str, data: str) -> bool:
        """
        Forwards a message over the worker's channel.
        Failures are logged and reported as False, never raised.

        The write happens outside the handle lock, so a worker that stops reading
        its channel can stall the sender but never stop() or the exit observer.
        """
        if not isinstance(data, str) or not data.strip():
            log.debug(f"Not sending empty {message_type} message to worker '{self.identity}'.")
            return False
        with self._lock:
            process = self.process if self.state is WorkerState.RUNNING else None
            if process is None:
                log.warning(f"Worker '{self.identity}' is not running ({self.state.value}); message dropped.")
                return False
        try:
            payload = channel.encode_message(message_type, data)
            with self._send_lock:
                process_utils.write_to_channel(process, payload)
        except (OSError, ValueError) as e:
            log.warning(f"Failed to send message to worker '{self.identity}': {e}")
            return False
        return True

    def stop(self) -> Any:
        """
        Marks the worker as intentionally stopped and returns the live process, if any.

        The caller delivers the signal. A handle that never got a process settles
        here; one whose process is live settles in its exit observer.
        """
        with self._lock:
            if self.state.is_terminal:
                return None
            self._stop_requested = True
            if self.process is None:
                self._settle(WorkerState.TERMINATED, policy.ExitCause.INTENTIONAL.value)
                if self.log_sink is not None:
                    self.log_sink.close()
                return None
            return self.process

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the handle is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "identity": self.identity,
                "state": self.state.value,
                "pid": getattr(self.process, "pid", None),
                "restart_count": self.restart_count,
                "reason": self.reason,
            }


def _close_channel(process) -> None:
    stdin = getattr(process, "stdin", None)
    if stdin is None:
        return
    try:
        stdin.close()
    except OSError as e:
        log.debug(f"Channel close failed: {e}")
