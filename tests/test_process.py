"""End-to-end tests against real child processes."""

from __future__ import annotations

import sys
import time
import threading

import pytest

from botfleet.local.supervisor import ProcessManager, WorkerState, process_utils
from conftest import make_spec, wait_until


@pytest.fixture
def run_script(monkeypatch):
    """Makes workers run an inline Python script instead of the agent entry point."""
    def use(script: str):
        monkeypatch.setattr(process_utils, "get_worker_args", lambda spec: [sys.executable, "-u", "-c", script])
    return use


def test_worker_args_shape(tmp_path, monkeypatch):
    monkeypatch.setattr(process_utils.settings, "PYTHON_EXECUTABLE", "python3")
    spec = make_spec(tmp_path, "andy", credential="sk-secret")

    args = process_utils.get_worker_args(spec)

    assert args[:3] == ["python3", "-m", "botfleet.local.script_entry.agent"]
    assert args[3:9] == ["-p", str(spec.profile_path), "-u", str(tmp_path), "-e", str(tmp_path)]
    assert "-l" not in args
    assert "sk-secret" not in args


def test_worker_args_with_memory_reload(tmp_path):
    args = process_utils.get_worker_args(make_spec(tmp_path, "andy", load_memory=True))
    assert args[-2:] == ["-l", "true"]


def test_credential_goes_through_environment(tmp_path):
    env = process_utils.get_worker_env(make_spec(tmp_path, "andy", credential="sk-secret"))
    assert env["OPENAI_API_KEY"] == "sk-secret"


def test_output_lands_in_worker_log(tmp_path, run_script):
    run_script("print('mining diamonds'); import sys; print('oops', file=sys.stderr)")
    manager = ProcessManager(log_dir=tmp_path / "runlogs")
    manager.start_all([make_spec(tmp_path, "andy")])
    handle = manager.handles["andy"]

    assert handle.wait(10)
    assert handle.reason == "clean-stop"
    text = (tmp_path / "runlogs" / "andy.log").read_text()
    assert "Arguments:" in text
    assert "mining diamonds" in text
    assert "oops" in text
    assert "exited with code 0" in text
    manager.shutdown_all(timeout=1)


def test_real_ejection(tmp_path, run_script):
    run_script("import sys; sys.exit(128)")
    kicked = []
    manager = ProcessManager(notify_kicked=kicked.append, log_dir=tmp_path / "runlogs")
    manager.start_all([make_spec(tmp_path, "andy")])
    handle = manager.handles["andy"]

    assert handle.wait(10)
    assert wait_until(lambda: kicked == ["andy"])
    assert handle.state is WorkerState.TERMINATED
    manager.shutdown_all(timeout=1)


def test_real_crash_loop_opens_circuit(tmp_path, run_script):
    run_script("import sys; sys.exit(1)")
    manager = ProcessManager(log_dir=tmp_path / "runlogs")
    manager.start_all([make_spec(tmp_path, "andy")])
    handle = manager.handles["andy"]

    assert handle.wait(20)
    assert handle.state is WorkerState.CIRCUIT_OPEN
    assert handle.restart_count == 4
    manager.shutdown_all(timeout=1)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_real_shutdown_and_message(tmp_path, run_script):
    run_script(
        "import sys\n"
        "for line in sys.stdin:\n"
        "    print('got', line.strip())\n"
    )
    manager = ProcessManager(log_dir=tmp_path / "runlogs")
    manager.start_all([make_spec(tmp_path, "andy")])
    handle = manager.handles["andy"]

    assert manager.send("andy", "build a house") is True
    assert wait_until(lambda: "build a house" in (tmp_path / "runlogs" / "andy.log").read_text(), timeout=10)

    manager.shutdown_all(timeout=5)
    assert handle.state is WorkerState.TERMINATED
    assert handle.reason == "intentional-stop"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_shutdown_is_not_held_up_by_a_stuck_send(tmp_path, run_script):
    run_script("import time; time.sleep(30)")
    manager = ProcessManager(log_dir=tmp_path / "runlogs")
    manager.start_all([make_spec(tmp_path, "andy")])
    handle = manager.handles["andy"]
    results = []

    # Larger than any pipe buffer; the worker never reads it.
    sender = threading.Thread(target=lambda: results.append(manager.send("andy", "x" * (1 << 20))), daemon=True)
    sender.start()
    time.sleep(0.5)
    stopper = threading.Thread(target=manager.shutdown_all, kwargs={"timeout": 1}, daemon=True)
    stopper.start()

    stopper.join(8)
    sender.join(8)
    assert not stopper.is_alive()
    assert not sender.is_alive()
    assert results == [False]
    assert handle.state is WorkerState.TERMINATED
    assert handle.reason == "intentional-stop"
