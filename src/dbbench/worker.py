"""Entrypoint for the Redis-backed agent worker on each database host."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from redis import Redis
from rq import SimpleWorker

from dbbench.config import settings
from dbbench.controller import AgentState
from dbbench.tasks import get_controller

LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s %(message)s",
    )


def run_worker(queue_name: Optional[str] = None, name: Optional[str] = None) -> None:
    """Serve agent tasks until interrupted.

    The worker executes jobs in its own process (no fork per job) so the
    controller, and the database it supervises, outlive individual jobs.
    """
    queue_name = queue_name or settings.agent_queue
    name = name or settings.agent_name
    redis_conn = Redis.from_url(settings.redis_url)
    worker = SimpleWorker([queue_name], connection=redis_conn, name=name)
    LOGGER.info("Agent %s starting; queue=%s", name, queue_name)
    try:
        worker.work()
    finally:
        controller = get_controller()
        if controller.state in (AgentState.RUNNING, AgentState.STOPPING):
            LOGGER.info("Worker exiting; stopping supervised database")
            controller.stop().result(timeout=settings.stop_grace_seconds * 2)


def main() -> None:
    _configure_logging()
    run_worker()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:  # pragma: no cover - graceful shutdown
        sys.exit(0)
