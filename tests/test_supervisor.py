"""Tests for ProcessManager: fleet start, message relay and shutdown."""

from __future__ import annotations

import json
import time
import threading

import pytest

from botfleet.local.supervisor import ProcessManager, WorkerState
from conftest import FakeLauncher, make_spec, wait_until


@pytest.fixture
def kicked():
    return []


@pytest.fixture
def manager(launcher, clock, tmp_path, kicked):
    manager = ProcessManager(notify_kicked=kicked.append, launcher=launcher, clock=clock, log_dir=tmp_path / "runlogs")
    yield manager
    manager.shutdown_all(timeout=1)


def two_specs(tmp_path):
    return [make_spec(tmp_path, "andy"), make_spec(tmp_path, "randy")]


class TestStartAll:

    def test_two_workers_start_and_stay_running(self, manager, launcher, tmp_path):
        assert manager.start_all(two_specs(tmp_path)) is True

        assert list(manager.handles) == ["andy", "randy"]
        assert all(h.state is WorkerState.RUNNING for h in manager.handles.values())
        assert len(launcher.processes) == 2

    def test_double_start_is_refused(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        assert manager.start_all([make_spec(tmp_path, "sandy")]) is False
        assert list(manager.handles) == ["andy", "randy"]
        assert len(launcher.processes) == 2

    def test_duplicate_identities_rejected_before_spawning(self, manager, launcher, tmp_path):
        with pytest.raises(ValueError):
            manager.start_all([make_spec(tmp_path, "andy"), make_spec(tmp_path, "andy")])
        assert launcher.processes == []
        assert not manager.is_active

    def test_status_snapshots(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        status = manager.status()

        assert [s["identity"] for s in status] == ["andy", "randy"]
        assert status[0]["state"] == "running"
        assert status[0]["pid"] == launcher.processes[0].pid
        assert status[0]["restart_count"] == 0


class TestMessaging:

    def test_send_routes_to_one_worker(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))

        assert manager.send("randy", "collect wood") is True
        assert launcher.processes[0].sent_messages() == []
        assert json.loads(launcher.processes[1].sent_messages()[0]) == {"type": "manual_chat", "data": "collect wood"}

    def test_send_to_unknown_identity_is_a_noop(self, manager, tmp_path):
        manager.start_all(two_specs(tmp_path))
        assert manager.send("nobody", "hello") is False

    def test_send_before_start_is_a_noop(self, manager):
        assert manager.send("andy", "hello") is False

    def test_send_transcription_to_one_worker(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))

        assert manager.send_transcription("andy", "follow me") is True
        assert json.loads(launcher.processes[0].sent_messages()[0])["type"] == "transcription"
        assert manager.send_transcription("nobody", "follow me") is False

    def test_broadcast_skips_stopped_workers(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        launcher.processes[0].exit(0)
        assert manager.handles["andy"].wait(2)

        assert manager.broadcast_transcription("hello everyone") == 1
        assert json.loads(launcher.processes[1].sent_messages()[0]) == {"type": "transcription", "data": "hello everyone"}

    def test_broadcast_blank_is_not_sent(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        assert manager.broadcast_transcription("  ") == 0


class TestEjection:

    def test_ejection_reaches_fleet_callback(self, manager, launcher, tmp_path, kicked):
        manager.start_all(two_specs(tmp_path))
        launcher.processes[1].exit(128)

        assert wait_until(lambda: kicked == ["randy"])
        assert manager.handles["randy"].state is WorkerState.TERMINATED
        assert manager.handles["andy"].state is WorkerState.RUNNING
        assert len(launcher.processes) == 2

    def test_failing_callback_is_contained(self, launcher, clock, tmp_path):
        def explode(identity):
            raise RuntimeError("callback bug")

        manager = ProcessManager(notify_kicked=explode, launcher=launcher, clock=clock, log_dir=tmp_path)
        manager.start_all([make_spec(tmp_path, "andy")])
        handle = manager.handles["andy"]
        launcher.current.exit(128)

        assert handle.wait(2)
        assert handle.state is WorkerState.TERMINATED
        manager.shutdown_all(timeout=1)


class TestShutdownAll:

    def test_shutdown_stops_running_fleet_silently(self, manager, launcher, tmp_path, kicked):
        manager.start_all(two_specs(tmp_path))
        handles = list(manager.handles.values())

        manager.shutdown_all(timeout=2)

        assert all(h.state is WorkerState.TERMINATED for h in handles)
        assert all(h.reason == "intentional-stop" for h in handles)
        assert kicked == []
        assert manager.handles == {}
        assert not manager.is_active
        assert len(launcher.processes) == 2

    def test_shutdown_twice_does_not_signal_again(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        manager.shutdown_all(timeout=2)
        manager.shutdown_all(timeout=2)

        assert [p.signals for p in launcher.processes] == [["SIGTERM"], ["SIGTERM"]]

    def test_shutdown_on_empty_fleet(self, manager):
        manager.shutdown_all(timeout=1)
        manager.shutdown_all(timeout=1)
        assert manager.handles == {}

    def test_shutdown_with_partial_fleet(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        handles = dict(manager.handles)
        launcher.processes[0].exit(0)
        assert handles["andy"].wait(2)

        manager.shutdown_all(timeout=2)

        assert launcher.processes[0].signals == []
        assert launcher.processes[1].signals == ["SIGTERM"]
        assert handles["andy"].reason == "clean-stop"
        assert handles["randy"].reason == "intentional-stop"

    def test_shutdown_after_spawn_failure(self, clock, tmp_path):
        manager = ProcessManager(launcher=FakeLauncher(fail=True), clock=clock, log_dir=tmp_path)
        manager.start_all(two_specs(tmp_path))
        handles = list(manager.handles.values())

        manager.shutdown_all(timeout=1)

        assert all(h.reason == "spawn error" for h in handles)

    def test_stubborn_worker_is_killed(self, clock, tmp_path):
        launcher = FakeLauncher(ignore_terminate=True)
        manager = ProcessManager(launcher=launcher, clock=clock, log_dir=tmp_path)
        manager.start_all([make_spec(tmp_path, "andy")])
        handle = manager.handles["andy"]

        manager.shutdown_all(timeout=0.1)

        assert launcher.current.signals == ["SIGTERM", "SIGKILL"]
        assert handle.state is WorkerState.TERMINATED
        assert handle.reason == "intentional-stop"

    def test_fleet_can_start_again_after_shutdown(self, manager, launcher, tmp_path):
        manager.start_all(two_specs(tmp_path))
        manager.shutdown_all(timeout=2)

        assert manager.start_all(two_specs(tmp_path)) is True
        assert len(launcher.processes) == 4

    def test_shutdown_right_after_crash_respawn(self, manager, launcher, clock, tmp_path, kicked):
        manager.start_all([make_spec(tmp_path, "andy")])
        handle = manager.handles["andy"]
        crashed = launcher.current
        clock.advance(5)
        crashed.exit(1)
        assert wait_until(lambda: len(launcher.processes) == 2 and handle.state is WorkerState.RUNNING)

        manager.shutdown_all(timeout=2)

        assert crashed.signals == []
        assert launcher.current.signals == ["SIGTERM"]
        assert handle.state is WorkerState.TERMINATED
        assert handle.reason == "intentional-stop"
        assert handle.restart_count == 1
        assert kicked == []

    def test_shutdown_during_respawn_stops_the_new_process(self, clock, tmp_path):
        launcher = GatedLauncher()
        manager = ProcessManager(launcher=launcher, clock=clock, log_dir=tmp_path / "runlogs")
        manager.start_all([make_spec(tmp_path, "andy")])
        handle = manager.handles["andy"]
        clock.advance(5)
        launcher.current.exit(1)
        assert launcher.respawning.wait(2)

        stopper = threading.Thread(target=manager.shutdown_all, kwargs={"timeout": 2})
        stopper.start()
        time.sleep(0.1)
        launcher.release.set()
        stopper.join(5)

        assert not stopper.is_alive()
        assert len(launcher.processes) == 2
        assert launcher.processes[0].signals == []
        assert launcher.processes[1].signals == ["SIGTERM"]
        assert handle.state is WorkerState.TERMINATED
        assert handle.reason == "intentional-stop"


class GatedLauncher(FakeLauncher):
    """Holds every respawn until the test releases it."""

    def __init__(self):
        super().__init__()
        self.respawning = threading.Event()
        self.release = threading.Event()

    def __call__(self, spec, sink):
        if self.processes:
            self.respawning.set()
            self.release.wait(5)
        return super().__call__(spec, sink)
