import os
import sys
import logging
import threading
import subprocess
from botfleet import settings
from botfleet.log.sink import LogSink
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

if TYPE_CHECKING:
    from .worker import WorkerSpec

log = logging.getLogger(__name__)


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    # Own session so terminal signals only reach the supervisor.
    return {"start_new_session": True}

def get_worker_args(spec: "WorkerSpec") -> List[str]:
    """Returns the command-line arguments for a worker process. The credential is never part of argv."""
    args = [
        settings.PYTHON_EXECUTABLE, "-m", settings.WORKER_MODULE,
        "-p", str(spec.profile_path),
        "-u", str(spec.user_data_dir),
        "-e", str(spec.app_path),
    ]
    if spec.load_memory:
        args += ["-l", "true"]
    return args

def get_worker_env(spec: "WorkerSpec") -> Dict[str, str]:
    """Returns the environment for a worker process, carrying the per-run credential."""
    env = dict(os.environ)
    if spec.credential:
        env[settings.CREDENTIAL_ENV_VAR] = spec.credential
    return env

#* --- Output Capture ---
def _read_pipe(pipe, sink: LogSink, level: int) -> None:
    """Target function for reader threads. Copies lines from a worker pipe into its log sink."""
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if line:
                sink.write(line, level)
    except Exception as e:
        log.debug(f"Pipe reader for {sink.identity} stream exited: {e}")
    finally:
        pipe.close()

def log_process_output(process: subprocess.Popen, sink: LogSink) -> List[threading.Thread]:
    """Starts background threads to drain a worker's stdout/stderr into its sink."""
    readers = []
    for pipe, level, stream in ((process.stdout, logging.INFO, "stdout"), (process.stderr, logging.ERROR, "stderr")):
        if pipe is None:
            continue
        reader = threading.Thread(
            target=_read_pipe,
            args=(pipe, sink, level),
            daemon=True,
            name=f"{sink.identity}-{stream}",
        )
        reader.start()
        readers.append(reader)
    return readers

def launch_worker(spec: "WorkerSpec", sink: LogSink) -> Tuple[subprocess.Popen, List[threading.Thread]]:
    """
    Spawns one worker process with its channel on stdin and output piped into the sink.

    :raises OSError: If the process could not be created.
    """
    args = get_worker_args(spec)
    sink.write(f"Arguments: {' '.join(args)}")
    process = subprocess.Popen(
        args,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=str(spec.app_path),
        env=get_worker_env(spec),
        **_get_popen_creation_flags(),
    )
    readers = log_process_output(process, sink)
    log.info(f"Worker '{spec.identity}' started with PID: {process.pid}")
    return process, readers

#* --- Channel ---
def write_to_channel(process: subprocess.Popen, payload: bytes) -> None:
    """
    Writes one encoded message to the worker's stdin.

    :raises OSError: If the pipe is broken.
    :raises ValueError: If the pipe is already closed.
    """
    if process.stdin is None:
        raise ValueError("Worker was started without a channel.")
    process.stdin.write(payload)
    process.stdin.flush()
