"""Agent tasks executed by the Redis queue worker on each database host."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from dbbench import fileinspect
from dbbench.config import settings
from dbbench.controller import AgentController, AgentError, BackendSpec, UnexpectedExit

logger = logging.getLogger(__name__)

_controller: Optional[AgentController] = None
_controller_lock = threading.Lock()


def get_controller() -> AgentController:
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = AgentController.from_settings(settings)
        return _controller


def start_database(
    controller: AgentController,
    spec: BackendSpec,
    *,
    wait_ready: bool = False,
    ready_timeout: float = 60.0,
    poll_interval: float = 1.0,
    stop_timeout: float = 60.0,
) -> Dict[str, Any]:
    """Drive ``controller`` to running and describe the outcome.

    A database that never becomes ready is stopped again, so a failed start
    leaves no live process behind.
    """
    try:
        process = controller.start(spec)
    except AgentError as exc:
        return {"status": "failed", "kind": type(exc).__name__, "error": str(exc)}

    payload: Dict[str, Any] = {
        "status": "running",
        "pid": process.pid,
        "command": process.command_line,
    }
    if not wait_ready:
        return payload

    try:
        payload["ready"] = controller.wait_ready(timeout=ready_timeout, poll_interval=poll_interval)
    except TimeoutError as exc:
        logger.error("Database %s not ready after %.0fs: %s", spec.backend, ready_timeout, exc)
        payload.update(status="failed", kind="NotReady", error=f"not ready after {ready_timeout:.0f}s: {exc}")
    except AgentError as exc:
        logger.error("Database %s exited before it became ready: %s", spec.backend, exc)
        payload.update(status="failed", kind=type(exc).__name__, error=str(exc))

    if payload["status"] == "failed":
        exit_status = controller.stop().result(timeout=stop_timeout)
        if exit_status is not None:
            payload["returncode"] = exit_status.returncode
        payload["state"] = controller.state.value
    return payload


def stop_database(controller: AgentController, *, timeout: float = 60.0) -> Dict[str, Any]:
    """Stop the database and report its exit status and on-disk data size.

    A process that exited without a stop request is reported with
    ``anomaly`` set and the ``UnexpectedExit`` details.
    """
    exit_status = controller.stop().result(timeout=timeout)
    payload: Dict[str, Any] = {"status": controller.state.value}

    if exit_status is None:
        # the watcher publishes the exit just after the state changes
        exited = controller.await_exit()
        error = exited.exception(timeout=timeout)
        if isinstance(error, UnexpectedExit):
            payload.update(
                anomaly=True,
                kind=type(error).__name__,
                error=str(error),
                pid=error.pid,
                returncode=error.returncode,
                requested=False,
            )
        elif error is None:
            exit_status = exited.result()

    if exit_status is not None:
        payload["pid"] = exit_status.pid
        payload["returncode"] = exit_status.returncode
        payload["requested"] = exit_status.requested

    spec = controller.spec
    if spec is not None and spec.data_dir.exists():
        payload["datasize"] = fileinspect.size(spec.data_dir)
    return payload


def start_database_task(spec_payload: Dict[str, Any], wait_ready: bool = True) -> Dict[str, Any]:
    spec = BackendSpec.from_payload(spec_payload)
    logger.info("Start requested for %s (member %d of %d)", spec.backend, spec.member_id, len(spec.peers))
    return start_database(
        get_controller(),
        spec,
        wait_ready=wait_ready,
        ready_timeout=settings.ready_timeout,
        poll_interval=settings.ready_poll_interval,
        stop_timeout=settings.stop_grace_seconds * 2,
    )


def stop_database_task() -> Dict[str, Any]:
    logger.info("Stop requested")
    return stop_database(get_controller(), timeout=settings.stop_grace_seconds * 2)


def agent_status_task() -> Dict[str, Any]:
    return get_controller().status()
