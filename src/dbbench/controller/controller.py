"""Lifecycle controller for the single database process an agent supervises."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, List, Optional

from dbbench.controller.errors import (
    AgentError,
    AlreadyRunning,
    InvalidTransition,
    LaunchFailure,
    MissingBinary,
    PrepareFailure,
    StartCancelled,
    UnexpectedExit,
)
from dbbench.controller.models import AgentProcess, AgentState, BackendSpec, ExitStatus
from dbbench.controller.probes import wait_until_ready
from dbbench.controller.templates import RenderedBackend, TemplateRegistry, build_registry

logger = logging.getLogger(__name__)


_TRANSITIONS = {
    AgentState.IDLE: {AgentState.PREPARING},
    AgentState.PREPARING: {AgentState.PREPARING, AgentState.LAUNCHING, AgentState.FAILED},
    AgentState.LAUNCHING: {AgentState.RUNNING, AgentState.FAILED},
    AgentState.RUNNING: {AgentState.STOPPING, AgentState.STOPPED},
    AgentState.STOPPING: {AgentState.STOPPED},
    AgentState.STOPPED: {AgentState.PREPARING},
    AgentState.FAILED: {AgentState.PREPARING},
}


def _resolved(value: Any) -> Future:
    future: Future = Future()
    future.set_result(value)
    return future


class AgentController:
    """Drive one database process through prepare, launch, supervise and stop.

    ``prepare``/``launch``/``start`` run inside a per-controller exclusive
    section and are rejected with :class:`AlreadyRunning` while a process is
    live or another start attempt holds the section. Process exit is observed
    on a dedicated watcher thread; callers receive futures instead of polling.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        log_path: Path,
        *,
        name: str = "agent",
        stop_grace_seconds: float = 10.0,
    ) -> None:
        self.name = name
        self._registry = registry
        self._log_path = Path(log_path)
        self._stop_grace = stop_grace_seconds

        self._start_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._cancel = threading.Event()
        self._cancel_waiters: List[Future] = []

        self._state = AgentState.IDLE
        self._spec: Optional[BackendSpec] = None
        self._rendered: Optional[RenderedBackend] = None
        self._process: Optional[AgentProcess] = None
        self._exit_future: Optional[Future] = None
        self._stop_future: Optional[Future] = None
        self._kill_timer: Optional[threading.Timer] = None
        self.last_error: Optional[BaseException] = None

    @classmethod
    def from_settings(cls, config) -> "AgentController":
        return cls(
            build_registry(config),
            config.database_log,
            name=config.agent_name,
            stop_grace_seconds=config.stop_grace_seconds,
        )

    @property
    def state(self) -> AgentState:
        with self._state_lock:
            return self._state

    @property
    def spec(self) -> Optional[BackendSpec]:
        return self._spec

    @property
    def process(self) -> Optional[AgentProcess]:
        with self._state_lock:
            return self._process

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start(self, spec: BackendSpec) -> AgentProcess:
        self._enter_start(fresh=True)
        try:
            self._prepare(spec)
            return self._launch()
        finally:
            self._exit_start()

    def prepare(self, spec: BackendSpec) -> RenderedBackend:
        self._enter_start(fresh=True)
        try:
            return self._prepare(spec)
        finally:
            self._exit_start()

    def launch(self) -> AgentProcess:
        self._enter_start()
        try:
            return self._launch()
        finally:
            self._exit_start()

    def _enter_start(self, *, fresh: bool = False) -> None:
        if not self._start_lock.acquire(blocking=False):
            raise AlreadyRunning(f"{self.name}: a start attempt is already in progress")
        with self._state_lock:
            if self._state in (AgentState.RUNNING, AgentState.STOPPING):
                self._start_lock.release()
                pid = self._process.pid if self._process else None
                raise AlreadyRunning(f"{self.name}: database is already {self._state.value} (PID: {pid})")
            if fresh:
                self._cancel.clear()

    def _exit_start(self) -> None:
        chained: Optional[Future] = None
        with self._state_lock:
            waiters, self._cancel_waiters = self._cancel_waiters, []
            if self._cancel.is_set():
                if self._state == AgentState.RUNNING:
                    chained = self._request_stop()
                elif not self._state.terminal:
                    self._fail(StartCancelled(f"{self.name}: start cancelled by stop request"))
            self._start_lock.release()

        for waiter in waiters:
            if chained is None:
                waiter.set_result(None)
            else:
                chained.add_done_callback(lambda done, target=waiter: target.set_result(done.result()))

    def _prepare(self, spec: BackendSpec) -> RenderedBackend:
        self._transition(AgentState.PREPARING)
        self._spec = spec
        self._rendered = None
        try:
            rendered = self._registry.render(spec)
            if not rendered.binary.exists():
                raise MissingBinary(spec.backend, rendered.binary)
            self._checkpoint()

            self._reset_data_dir(spec.data_dir)
            self._checkpoint()

            for filename, content in sorted(rendered.identity_files.items()):
                identity_path = spec.data_dir / filename
                logger.info("Writing %s identity file %s (%s)", spec.backend, identity_path, content)
                identity_path.write_text(content, encoding="utf-8")

            rendered.config_path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Writing %s config file %s", spec.backend, rendered.config_path)
            logger.debug("Config for %s:\n%s", spec.backend, rendered.config_text)
            rendered.config_path.write_text(rendered.config_text, encoding="utf-8")
            self._checkpoint()
        except AgentError as exc:
            self._fail(exc)
            raise
        except OSError as exc:
            error = PrepareFailure(f"{self.name}: failed to prepare {spec.backend}: {exc}")
            self._fail(error)
            raise error from exc

        self._rendered = rendered
        return rendered

    def _launch(self) -> AgentProcess:
        with self._state_lock:
            if self._state != AgentState.PREPARING or self._rendered is None or self._spec is None:
                raise InvalidTransition(f"{self.name}: launch requires a prepared backend (state {self._state.value})")
            self._transition(AgentState.LAUNCHING)
        rendered = self._rendered
        spec = self._spec

        process = AgentProcess(
            spec=spec,
            command=list(rendered.launch_args),
            work_dir=rendered.work_dir,
            config_path=rendered.config_path,
            log_path=self._log_path,
        )
        log_sink = None
        try:
            self._checkpoint()
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            log_sink = self._log_path.open("ab")
            logger.info("Starting database %r (cwd: %s)", process.command_line, process.work_dir or ".")
            popen = subprocess.Popen(
                process.command,
                cwd=str(process.work_dir) if process.work_dir is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=log_sink,
                stderr=log_sink,
            )
        except StartCancelled as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001 - any launch error fails the attempt
            if log_sink is not None:
                log_sink.close()
            error = LaunchFailure(f"{self.name}: failed to start {process.command_line!r}: {exc}")
            self._fail(error)
            raise error from exc

        process.popen = popen
        process.pid = popen.pid
        process.log_sink = log_sink
        exit_future: Future = Future()
        with self._state_lock:
            self._process = process
            self._exit_future = exit_future
            self._stop_future = None
            self._transition(AgentState.RUNNING)
        logger.info("Started database %r (PID: %d)", process.command_line, popen.pid)

        watcher = threading.Thread(
            target=self._watch,
            args=(process, exit_future),
            name=f"{self.name}-watch-{popen.pid}",
            daemon=True,
        )
        watcher.start()
        return process

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------
    def stop(self) -> Future:
        """Request termination; the returned future resolves with the exit status."""
        with self._state_lock:
            state = self._state
            if state == AgentState.RUNNING:
                return self._request_stop()
            if state == AgentState.STOPPING and self._stop_future is not None:
                return self._stop_future
            if state in (AgentState.PREPARING, AgentState.LAUNCHING):
                self._cancel.set()
                if self._start_lock.acquire(blocking=False):
                    try:
                        self._fail(StartCancelled(f"{self.name}: start cancelled by stop request"))
                    finally:
                        self._start_lock.release()
                    return _resolved(None)
                waiter: Future = Future()
                self._cancel_waiters.append(waiter)
                logger.info("Stop requested while %s; cancelling start attempt", state.value)
                return waiter
        return _resolved(None)

    def await_exit(self) -> Future:
        """Future for the live process exit; raises UnexpectedExit if not stopped on request."""
        with self._state_lock:
            if self._exit_future is None:
                return _resolved(None)
            return self._exit_future

    def wait_ready(self, *, timeout: float, poll_interval: float) -> str:
        with self._state_lock:
            if self._state != AgentState.RUNNING or self._spec is None:
                raise InvalidTransition(f"{self.name}: database is not running (state {self._state.value})")
            spec = self._spec
        probe = self._registry.get(spec.backend).readiness_probe(spec)
        if probe is None:
            return f"{spec.backend} has no readiness probe"
        return wait_until_ready(probe, timeout=timeout, poll_interval=poll_interval)

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            process = self._process
            return {
                "agent": self.name,
                "state": self._state.value,
                "backend": self._spec.backend if self._spec else None,
                "pid": process.pid if process else None,
                "command": process.command_line if process else None,
                "error": str(self.last_error) if self.last_error else None,
            }

    def _request_stop(self) -> Future:
        process = self._process
        assert process is not None and process.popen is not None
        process.stop_requested = True
        self._transition(AgentState.STOPPING)
        future: Future = Future()
        self._stop_future = future

        logger.info("Stopping database process %d", process.pid)
        try:
            process.popen.terminate()
        except OSError as exc:
            logger.warning("Failed to signal process %d: %s", process.pid, exc)

        timer = threading.Timer(self._stop_grace, self._kill, args=(process,))
        timer.daemon = True
        timer.start()
        self._kill_timer = timer
        return future

    def _kill(self, process: AgentProcess) -> None:
        if process.popen is None or process.popen.poll() is not None:
            return
        logger.warning("Process %d ignored termination for %.1fs; killing", process.pid, self._stop_grace)
        try:
            process.popen.kill()
        except OSError as exc:
            logger.warning("Failed to kill process %d: %s", process.pid, exc)

    def _watch(self, process: AgentProcess, exit_future: Future) -> None:
        assert process.popen is not None
        returncode = process.popen.wait()

        with self._state_lock:
            requested = process.stop_requested
            if process.log_sink is not None:
                process.log_sink.close()
            if self._process is process:
                self._transition(AgentState.STOPPED)
            stop_future = self._stop_future if requested else None
            timer, self._kill_timer = self._kill_timer, None

        if timer is not None:
            timer.cancel()

        status = ExitStatus(pid=process.pid or 0, returncode=returncode, requested=requested)
        if requested:
            logger.info("Database process %d stopped (code %s)", status.pid, returncode)
            exit_future.set_result(status)
        else:
            error = UnexpectedExit(status.pid, returncode)
            self.last_error = error
            logger.error("Database process %d exited without a stop request (code %s)", status.pid, returncode)
            exit_future.set_exception(error)

        if stop_future is not None and not stop_future.done():
            stop_future.set_result(status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(self, target: AgentState) -> None:
        with self._state_lock:
            current = self._state
            if target not in _TRANSITIONS[current]:
                raise InvalidTransition(f"{self.name}: cannot move from {current.value} to {target.value}")
            self._state = target
        logger.debug("Agent %s: %s -> %s", self.name, current.value, target.value)

    def _fail(self, error: BaseException) -> None:
        with self._state_lock:
            self.last_error = error
            if self._state != AgentState.FAILED:
                self._transition(AgentState.FAILED)
        logger.error("Agent %s failed: %s", self.name, error)

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise StartCancelled(f"{self.name}: start cancelled by stop request")

    @staticmethod
    def _reset_data_dir(data_dir: Path) -> None:
        if data_dir.exists():
            logger.info("Removing data directory %s", data_dir)
            shutil.rmtree(data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
