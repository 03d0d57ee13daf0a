"""Shared fakes for supervisor tests: a controllable child process, launcher and clock."""

from __future__ import annotations

import io
import time
import signal
import threading
from pathlib import Path

import pytest

from botfleet.local.supervisor.worker import WorkerSpec


class FakePipe(io.BytesIO):
    """Worker stdin double that keeps what was written after it is closed."""

    contents = b""

    def close(self):
        if not self.closed:
            self.contents = self.getvalue()
        super().close()


class FakeProcess:
    """Stands in for subprocess.Popen; exits when the test says so."""

    _next_pid = 9_999_900  # above Linux pid_max, never a real process

    def __init__(self, ignore_terminate: bool = False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.stdin = FakePipe()
        self.returncode = None
        self.signals: list[str] = []
        self.ignore_terminate = ignore_terminate
        self._exited = threading.Event()

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-signal.SIGKILL)

    def sent_messages(self) -> list[bytes]:
        data = self.stdin.contents if self.stdin.closed else self.stdin.getvalue()
        return [line for line in data.splitlines() if line]


class FakeLauncher:
    """Records every spawn; returns FakeProcess objects or raises when told to."""

    def __init__(self, fail=False, ignore_terminate: bool = False):
        self.fail = fail
        self.ignore_terminate = ignore_terminate
        self.specs: list[WorkerSpec] = []
        self.processes: list[FakeProcess] = []

    def __call__(self, spec, sink):
        self.specs.append(spec)
        if isinstance(self.fail, Exception):
            raise self.fail
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", "python")
        process = FakeProcess(ignore_terminate=self.ignore_terminate)
        self.processes.append(process)
        return process, []

    @property
    def current(self) -> FakeProcess:
        return self.processes[-1]


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Polls until predicate() is true; exit observers run on their own threads."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_spec(tmp_path: Path, identity: str = "andy", **kwargs) -> WorkerSpec:
    return WorkerSpec(
        identity=identity,
        profile_path=tmp_path / "profiles" / f"{identity}.json",
        user_data_dir=tmp_path,
        app_path=tmp_path,
        **kwargs,
    )


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def spec(tmp_path):
    return make_spec(tmp_path, credential="sk-test")


@pytest.fixture(autouse=True)
def close_worker_sinks():
    """Detaches per-worker log handlers left open by handles still running at test end."""
    yield
    import logging
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("proc."):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
