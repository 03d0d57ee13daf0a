import time
import psutil
import logging
from botfleet import settings
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .worker import WorkerHandle

log = logging.getLogger(__name__)

# Extra wait for exit observers after a forced kill.
KILL_CONFIRMATION_TIMEOUT = 2


def collect_descendants(pid: int) -> List[psutil.Process]:
    """
    Returns every process spawned by a worker, so none are orphaned when it stops.

    :param pid: The worker's PID.
    """
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} no longer exists, skipping children retrieval.")
        return []
    except psutil.Error as e:
        log.warning(f"Could not list children of process {pid}: {e}")
        return []


def _terminate_processes(processes: Iterable[psutil.Process]) -> None:
    """Sends SIGTERM to all given processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping termination.")
            continue


def _forceful_kill(processes: Iterable[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue


def _signal_worker(handle: "WorkerHandle", process, force: bool = False) -> None:
    """Signals a worker's own process through its Popen object, which owns the reaping."""
    try:
        if force:
            log.warning(f"Worker '{handle.identity}' did not stop gracefully. Killing PID {process.pid}.")
            process.kill()
        else:
            log.debug(f"Sending SIGTERM to worker '{handle.identity}' (PID {process.pid})")
            process.terminate()
    except (ProcessLookupError, OSError) as e:
        log.debug(f"Worker '{handle.identity}' already gone while signalling: {e}")


def _wait_for_handles(handles: Iterable["WorkerHandle"], timeout: float) -> List["WorkerHandle"]:
    """Waits for termination confirmation from each handle within a shared deadline. Returns the ones still alive."""
    deadline = time.monotonic() + timeout
    for handle in handles:
        handle.wait(max(0.0, deadline - time.monotonic()))
    return [handle for handle in handles if not handle.is_terminal]


def graceful_shutdown_sequence(handles: Iterable["WorkerHandle"], timeout: Optional[float] = None) -> None:
    """
    Stops every non-terminal worker: SIGTERM first, then kill after the grace period.

    :param handles: The handles to stop. Terminal handles are skipped.
    :param timeout: Grace period in seconds. Defaults to settings.GRACEFUL_SHUTDOWN_TIMEOUT.
    """
    timeout = settings.GRACEFUL_SHUTDOWN_TIMEOUT if timeout is None else timeout

    stopping = []
    descendants: List[psutil.Process] = []
    for handle in handles:
        if handle.is_terminal:
            continue
        process = handle.stop()
        stopping.append((handle, process))
        if process is not None:
            descendants.extend(collect_descendants(process.pid))

    if not stopping:
        log.info("No running workers found to stop.")
        return

    log.info(f"Initiating graceful shutdown for {len(stopping)} workers...")
    for handle, process in stopping:
        if process is not None:
            _signal_worker(handle, process)
    _terminate_processes(descendants)

    alive = _wait_for_handles([handle for handle, _ in stopping], timeout)
    if alive:
        log.warning(f"{len(alive)} workers did not terminate gracefully. Forcing shutdown...")
        for handle, process in stopping:
            if handle in alive and process is not None:
                _signal_worker(handle, process, force=True)
        alive = _wait_for_handles(alive, KILL_CONFIRMATION_TIMEOUT)
        for handle in alive:
            log.error(f"Worker '{handle.identity}' did not confirm termination.")

    if descendants:
        try:
            _, stubborn = psutil.wait_procs(descendants, timeout=KILL_CONFIRMATION_TIMEOUT)
        except psutil.Error:
            stubborn = []
        _forceful_kill(stubborn)
