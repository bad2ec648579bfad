from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from dbbench.controller import (
    AgentController,
    AgentState,
    AlreadyRunning,
    BackendSpec,
    InvalidTransition,
    LaunchFailure,
    MissingBinary,
    StartCancelled,
    TemplateError,
    TemplateRegistry,
    UnexpectedExit,
    UnknownBackend,
)
from helpers import SleeperTemplate, wait_for


def test_prepare_writes_identity_and_config(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()

    rendered = controller.prepare(sleeper_spec)

    assert controller.state == AgentState.PREPARING
    assert (sleeper_spec.data_dir / "myid").read_text(encoding="utf-8") == "2"
    config = rendered.config_path.read_text(encoding="utf-8")
    assert config == rendered.config_text
    assert "peer.2=10.0.0.2" in config


def test_prepare_is_idempotent(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()

    first = controller.prepare(sleeper_spec)
    first_config = first.config_path.read_bytes()
    (sleeper_spec.data_dir / "leftover.log").write_text("stale", encoding="utf-8")
    (sleeper_spec.data_dir / "version-2").mkdir()

    second = controller.prepare(sleeper_spec)

    assert second.config_path.read_bytes() == first_config
    assert sorted(path.name for path in sleeper_spec.data_dir.iterdir()) == ["myid"]


def test_missing_binary_fails_with_resolved_path(make_controller, sleeper_spec: BackendSpec, tmp_path: Path):
    missing = tmp_path / "bin" / "java"
    controller = make_controller(binary=missing)

    with pytest.raises(MissingBinary) as excinfo:
        controller.prepare(sleeper_spec)

    assert excinfo.value.path == missing
    assert controller.state == AgentState.FAILED
    assert controller.last_error is excinfo.value
    assert not sleeper_spec.data_dir.exists()


def test_unknown_backend_fails_before_touching_disk(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()
    spec = BackendSpec.build(backend="cassandra", data_dir=sleeper_spec.data_dir, client_port=9042)

    with pytest.raises(UnknownBackend):
        controller.start(spec)

    assert controller.state == AgentState.FAILED
    assert not spec.data_dir.exists()


def test_template_error_moves_to_failed(tmp_path: Path, work_dir: Path):
    template = SleeperTemplate(tmp_path / "sleeper.cfg", work_dir)
    template.requires_quorum = True
    controller = AgentController(TemplateRegistry([template]), tmp_path / "db.log")
    spec = BackendSpec.build(backend="sleeper", data_dir=tmp_path / "data", client_port=1)

    with pytest.raises(TemplateError):
        controller.prepare(spec)

    assert controller.state == AgentState.FAILED


def test_launch_requires_prepare(make_controller):
    controller = make_controller()

    with pytest.raises(InvalidTransition):
        controller.launch()

    assert controller.state == AgentState.IDLE


def test_launch_failure_moves_to_failed(make_controller, sleeper_spec: BackendSpec, tmp_path: Path):
    not_executable = tmp_path / "not-executable"
    not_executable.write_text("plain text", encoding="utf-8")
    not_executable.chmod(0o644)
    controller = make_controller(binary=not_executable)

    controller.prepare(sleeper_spec)
    with pytest.raises(LaunchFailure) as excinfo:
        controller.launch()

    assert isinstance(excinfo.value.__cause__, OSError)
    assert controller.state == AgentState.FAILED


def test_start_runs_process_in_template_work_dir(make_controller, sleeper_spec: BackendSpec, work_dir: Path):
    controller = make_controller()
    cwd_before = os.getcwd()

    process = controller.start(sleeper_spec)

    assert controller.state == AgentState.RUNNING
    assert process.pid is not None and process.pid > 0
    marker = work_dir / "cwd.txt"
    assert wait_for(lambda: marker.exists() and marker.read_text(encoding="utf-8") != "")
    assert Path(marker.read_text(encoding="utf-8")).resolve() == work_dir.resolve()
    assert os.getcwd() == cwd_before


def test_stop_resolves_future_with_requested_exit(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()
    process = controller.start(sleeper_spec)

    status = controller.stop().result(timeout=10)

    assert status.pid == process.pid
    assert status.requested is True
    assert controller.state == AgentState.STOPPED
    assert controller.await_exit().result(timeout=1) is status
    assert process.log_sink is not None and process.log_sink.closed


def test_prepare_while_running_is_rejected(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()
    process = controller.start(sleeper_spec)
    config_before = process.config_path.read_bytes()

    with pytest.raises(AlreadyRunning):
        controller.prepare(sleeper_spec)
    with pytest.raises(AlreadyRunning):
        controller.launch()

    assert controller.state == AgentState.RUNNING
    assert controller.process is process
    assert process.popen is not None and process.popen.poll() is None
    assert process.config_path.read_bytes() == config_before


def test_unexpected_exit_is_reported(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller(script="import sys; sys.exit(3)")
    controller.start(sleeper_spec)

    error = controller.await_exit().exception(timeout=10)

    assert isinstance(error, UnexpectedExit)
    assert error.returncode == 3
    assert controller.state == AgentState.STOPPED
    assert controller.last_error is error


def test_restart_after_stop(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()
    first = controller.start(sleeper_spec)
    controller.stop().result(timeout=10)

    second = controller.start(sleeper_spec)

    assert second.pid != first.pid
    assert controller.state == AgentState.RUNNING


def test_concurrent_start_is_rejected_and_stop_cancels_it(make_controller, sleeper_spec: BackendSpec):
    gate = threading.Event()
    entered = threading.Event()
    controller = make_controller(gate=gate, entered=entered)
    errors = []

    def _start():
        try:
            controller.start(sleeper_spec)
        except Exception as exc:  # noqa: BLE001 - captured for assertions
            errors.append(exc)

    starter = threading.Thread(target=_start)
    starter.start()
    assert entered.wait(5)

    with pytest.raises(AlreadyRunning):
        controller.start(sleeper_spec)

    cancelled = controller.stop()
    assert not cancelled.done()
    gate.set()
    starter.join(10)

    assert cancelled.result(timeout=5) is None
    assert controller.state == AgentState.FAILED
    assert len(errors) == 1 and isinstance(errors[0], StartCancelled)


def test_stop_between_prepare_and_launch(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller()
    controller.prepare(sleeper_spec)

    assert controller.stop().result(timeout=1) is None
    assert controller.state == AgentState.FAILED
    assert isinstance(controller.last_error, StartCancelled)
    with pytest.raises(InvalidTransition):
        controller.launch()


def test_stop_when_idle_is_a_no_op(make_controller):
    controller = make_controller()

    assert controller.stop().result(timeout=1) is None
    assert controller.await_exit().result(timeout=1) is None
    assert controller.state == AgentState.IDLE


def test_unexpected_launch_error_moves_to_failed(make_controller, sleeper_spec: BackendSpec):
    controller = make_controller(script="print('unreachable')\0")

    controller.prepare(sleeper_spec)
    with pytest.raises(LaunchFailure) as excinfo:
        controller.launch()

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert controller.state == AgentState.FAILED
    assert controller.process is None
