"""Readiness probes for freshly launched databases."""

from __future__ import annotations

import logging
import socket
import time
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

Probe = Callable[[], str]


def http_probe(url: str, name: str) -> Probe:
    def _probe() -> str:
        response = httpx.get(url, timeout=5.0)
        if response.status_code != 200:
            raise RuntimeError(f"status {response.status_code}")
        return f"{name} ready ({response.status_code})"

    return _probe


def zookeeper_probe(host: str, port: int) -> Probe:
    """Send the ``ruok`` four-letter command and expect ``imok``."""

    def _probe() -> str:
        with socket.create_connection((host, port), timeout=5.0) as conn:
            conn.sendall(b"ruok")
            reply = conn.recv(16)
        if reply.strip() != b"imok":
            raise RuntimeError(f"unexpected reply {reply!r}")
        return "zookeeper ready (imok)"

    return _probe


def wait_until_ready(probe: Probe, *, timeout: float, poll_interval: float) -> str:
    deadline = time.monotonic() + timeout
    last_error = "database not reachable"
    while time.monotonic() < deadline:
        try:
            return probe()
        except Exception as exc:  # noqa: BLE001 - best effort loop
            last_error = str(exc)
            logger.debug("Readiness probe failed: %s", last_error)
        time.sleep(poll_interval)
    raise TimeoutError(last_error)
