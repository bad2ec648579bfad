"""Fan start/stop commands out to every agent of a benchmark group."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator
from redis import Redis
from rq import Queue
from rq.job import Job

from dbbench.config import settings
from dbbench.controller import AgentController, BackendSpec
from dbbench.tasks import start_database, stop_database

logger = logging.getLogger(__name__)


class BenchmarkGroup(BaseModel):
    """One database under test: the agents running it and its tunables."""

    model_config = ConfigDict(frozen=True)

    database_id: str
    database_tag: str
    backend: str
    agent_endpoints: List[str]
    peer_ips: List[str]
    client_port: int
    data_dir: Path
    client_number: int = 1
    request_number: int = 0
    options: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_topology(self) -> "BenchmarkGroup":
        if not self.agent_endpoints:
            raise ValueError("agent_endpoints must not be empty")
        if len(self.agent_endpoints) != len(self.peer_ips):
            raise ValueError(
                f"{len(self.agent_endpoints)} agent endpoint(s) but {len(self.peer_ips)} peer address(es)"
            )
        return self

    @property
    def database_endpoints(self) -> List[str]:
        return [f"{ip}:{self.client_port}" for ip in self.peer_ips]

    @classmethod
    def load(cls, path: Path) -> "BenchmarkGroup":
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))

    def backend_specs(self) -> List[BackendSpec]:
        """One spec per agent; all share the peer order, each gets its 1-based member id."""
        return [
            BackendSpec.build(
                backend=self.backend,
                data_dir=self.data_dir,
                client_port=self.client_port,
                peers=list(self.peer_ips),
                member_id=idx,
                options=self.options,
            )
            for idx in range(1, len(self.peer_ips) + 1)
        ]


class RemoteAgentError(RuntimeError):
    """Raised when an agent job fails or cannot be fetched."""


class AgentClient(Protocol):
    endpoint: str

    def start(self, spec: BackendSpec) -> Dict[str, Any]:
        ...

    def stop(self) -> Dict[str, Any]:
        ...


class LocalAgentClient:
    """Drive an in-process controller (single host runs, tests)."""

    def __init__(
        self,
        endpoint: str,
        controller: AgentController,
        *,
        wait_ready: bool = False,
        ready_timeout: float = 60.0,
        poll_interval: float = 1.0,
        stop_timeout: float = 60.0,
    ) -> None:
        self.endpoint = endpoint
        self.controller = controller
        self._wait_ready = wait_ready
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout

    def start(self, spec: BackendSpec) -> Dict[str, Any]:
        return start_database(
            self.controller,
            spec,
            wait_ready=self._wait_ready,
            ready_timeout=self._ready_timeout,
            poll_interval=self._poll_interval,
            stop_timeout=self._stop_timeout,
        )

    def stop(self) -> Dict[str, Any]:
        return stop_database(self.controller, timeout=self._stop_timeout)


class QueueAgentClient:
    """Send commands to a remote agent through its Redis queue."""

    def __init__(
        self,
        endpoint: str,
        connection: Redis,
        *,
        timeout: float = 600.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.endpoint = endpoint
        self._queue = Queue(endpoint, connection=connection, default_timeout=int(timeout))
        self._timeout = timeout
        self._poll_interval = poll_interval

    def start(self, spec: BackendSpec) -> Dict[str, Any]:
        job = self._queue.enqueue(
            "dbbench.tasks.start_database_task",
            spec.to_payload(),
            result_ttl=86400,
            failure_ttl=86400,
            meta={"backend": spec.backend, "member_id": spec.member_id},
        )
        logger.info("Enqueued start for %s on %s (job %s)", spec.backend, self.endpoint, job.id)
        return self._wait(job)

    def stop(self) -> Dict[str, Any]:
        job = self._queue.enqueue("dbbench.tasks.stop_database_task", result_ttl=86400, failure_ttl=86400)
        logger.info("Enqueued stop on %s (job %s)", self.endpoint, job.id)
        return self._wait(job)

    def _wait(self, job: Job) -> Dict[str, Any]:
        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            status = job.get_status(refresh=True)
            if status == "finished":
                result = job.return_value()
                if not isinstance(result, dict):
                    raise RemoteAgentError(f"job {job.id} returned {result!r}")
                return result
            if status in {"failed", "stopped", "canceled"}:
                message = f"job ended with status {status}"
                if job.exc_info:
                    message = job.exc_info.strip().splitlines()[-1].strip()
                raise RemoteAgentError(f"{self.endpoint}: {message}")
            time.sleep(self._poll_interval)
        raise TimeoutError(f"{self.endpoint}: no answer after {self._timeout:.0f}s (job {job.id})")


@dataclass
class AgentOutcome:
    index: int
    endpoint: str
    status: str
    elapsed: float = 0.0
    detail: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def anomalous(self) -> bool:
        return self.status == "exited"


@dataclass
class GroupOutcome:
    action: str
    outcomes: List[AgentOutcome]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failures(self) -> List[AgentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    @property
    def first_failure(self) -> Optional[AgentOutcome]:
        failures = self.failures
        return failures[0] if failures else None

    @property
    def anomalies(self) -> List[AgentOutcome]:
        """Agents whose database exited without a stop request."""
        return [outcome for outcome in self.outcomes if outcome.anomalous]

    def datasizes(self) -> Dict[int, Optional[int]]:
        return {outcome.index: outcome.payload.get("datasize") for outcome in self.outcomes}


class Coordinator:
    """Issue one command per agent in parallel and wait for every answer."""

    def __init__(self, group: BenchmarkGroup, clients: Sequence[AgentClient]) -> None:
        if len(clients) != len(group.agent_endpoints):
            raise ValueError(f"expected {len(group.agent_endpoints)} agent client(s), got {len(clients)}")
        self.group = group
        self.clients = list(clients)

    @classmethod
    def over_redis(cls, group: BenchmarkGroup, config=settings) -> "Coordinator":
        connection = Redis.from_url(config.redis_url)
        clients = [
            QueueAgentClient(
                endpoint,
                connection,
                timeout=config.job_timeout,
                poll_interval=config.job_poll_interval,
            )
            for endpoint in group.agent_endpoints
        ]
        return cls(group, clients)

    def start_all(self) -> GroupOutcome:
        specs = self.group.backend_specs()
        logger.info(
            "Starting %s on %d agent(s) for %s", self.group.backend, len(self.clients), self.group.database_id
        )
        return self._fan_out(
            "start",
            [lambda client=client, spec=spec: client.start(spec) for client, spec in zip(self.clients, specs)],
        )

    def stop_all(self) -> GroupOutcome:
        logger.info("Stopping %d agent(s) for %s", len(self.clients), self.group.database_id)
        return self._fan_out("stop", [client.stop for client in self.clients])

    def _fan_out(self, action: str, calls: Sequence[Callable[[], Dict[str, Any]]]) -> GroupOutcome:
        with ThreadPoolExecutor(max_workers=len(calls), thread_name_prefix=f"agent-{action}") as pool:
            futures = [pool.submit(self._run_one, idx, action, call) for idx, call in enumerate(calls)]
            outcomes = [future.result() for future in futures]

        group_outcome = GroupOutcome(action=action, outcomes=outcomes)
        first = group_outcome.first_failure
        if first is not None:
            logger.error(
                "%d of %d agent(s) failed to %s; first: %s (%s)",
                len(group_outcome.failures),
                len(outcomes),
                action,
                first.endpoint,
                first.detail,
            )
        return group_outcome

    def _run_one(self, idx: int, action: str, call: Callable[[], Dict[str, Any]]) -> AgentOutcome:
        endpoint = self.group.agent_endpoints[idx]
        start = time.perf_counter()
        try:
            payload = call()
        except Exception as exc:  # noqa: BLE001 - every agent outcome is collected
            elapsed = time.perf_counter() - start
            logger.exception("Agent %s failed to %s", endpoint, action)
            return AgentOutcome(
                index=idx,
                endpoint=endpoint,
                status="failed",
                elapsed=elapsed,
                detail=f"{type(exc).__name__}: {exc}",
            )

        elapsed = time.perf_counter() - start
        status = str(payload.get("status", "failed"))
        detail = ""
        if status == "failed":
            detail = f"{payload.get('kind', 'Error')}: {payload.get('error', 'unknown error')}"
        elif payload.get("anomaly"):
            status = "exited"
            detail = f"{payload.get('kind', 'UnexpectedExit')}: {payload.get('error', 'exited without a stop request')}"
            logger.warning("Agent %s database exited on its own: %s", endpoint, detail)
        elif payload.get("pid") is not None:
            detail = f"pid {payload['pid']}"
        logger.info("Agent %s %s -> %s in %.2fs", endpoint, action, status, elapsed)
        return AgentOutcome(index=idx, endpoint=endpoint, status=status, elapsed=elapsed, detail=detail, payload=payload)
