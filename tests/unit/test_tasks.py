from __future__ import annotations

from pathlib import Path

from dbbench.controller import AgentState, BackendSpec
from dbbench.tasks import start_database, stop_database


def _refusing_check() -> str:
    raise ConnectionRefusedError("connection refused")


def test_start_failure_is_reported_as_payload(make_controller, sleeper_spec: BackendSpec, tmp_path: Path):
    controller = make_controller(binary=tmp_path / "absent")

    payload = start_database(controller, sleeper_spec)

    assert payload["status"] == "failed"
    assert payload["kind"] == "MissingBinary"
    assert controller.state == AgentState.FAILED


def test_start_and_stop_payloads(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()

    started = start_database(controller, sleeper_spec, wait_ready=True, ready_timeout=1, poll_interval=0.1)
    stopped = stop_database(controller, timeout=10)

    assert started["status"] == "running"
    assert started["pid"] == stopped["pid"]
    assert started["ready"] == "sleeper has no readiness probe"
    assert stopped["status"] == "stopped"
    assert stopped["requested"] is True
    assert stopped["returncode"] is not None
    assert stopped["datasize"] == 1
    assert "anomaly" not in stopped


def test_unready_database_is_stopped(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller(probe=_refusing_check)

    payload = start_database(
        controller,
        sleeper_spec,
        wait_ready=True,
        ready_timeout=0.3,
        poll_interval=0.05,
        stop_timeout=10,
    )

    assert payload["status"] == "failed"
    assert payload["kind"] == "NotReady"
    assert "connection refused" in payload["error"]
    assert payload["state"] == "stopped"
    assert controller.state == AgentState.STOPPED
    assert controller.process.popen.poll() is not None

    retried = start_database(controller, sleeper_spec)

    assert retried["status"] == "running"


def test_crashed_database_is_reported_as_anomaly(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller(script="import sys; sys.exit(3)")
    process = controller.start(sleeper_spec)
    controller.await_exit().exception(timeout=10)

    payload = stop_database(controller, timeout=10)

    assert payload["status"] == "stopped"
    assert payload["anomaly"] is True
    assert payload["kind"] == "UnexpectedExit"
    assert payload["requested"] is False
    assert payload["pid"] == process.pid
    assert payload["returncode"] == 3
    assert payload["datasize"] == 1


def test_stop_without_process(make_controller):
    assert stop_database(make_controller()) == {"status": "idle"}
