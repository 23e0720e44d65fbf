"""Durable report generation queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.report_gate import run_report_generation

logger = logging.getLogger(__name__)


REPORT_QUEUE_NAME = "report_jobs"

ReportDispatcher = Callable[[str], None]

_background_tasks: Set["asyncio.Task[Optional[str]]"] = set()


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_report_queue() -> Queue:
    """Return the configured report generation queue."""
    return Queue(
        name=REPORT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_report_generation(request_id: str) -> Job:
    """Enqueue report generation with retry/timeouts for durability."""
    queue = get_report_queue()
    return queue.enqueue(
        "services.report_gate.generate_report_job",
        request_id,
        job_id=f"report:{request_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


def _schedule_in_process(request_id: str) -> None:
    task = asyncio.get_running_loop().create_task(run_report_generation(request_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def dispatch_report_generation(request_id: str) -> None:
    """Hand report generation off without waiting for it.

    Uses the RQ queue when REPORT_GENERATION_ASYNC is set; otherwise (or
    when Redis is unreachable) schedules it on the running event loop.
    """
    if settings.REPORT_GENERATION_ASYNC:
        try:
            enqueue_report_generation(request_id)
            logger.info("Queued report generation for request %s", request_id)
            return
        except Exception as exc:
            logger.warning("Report queue unavailable (%s); generating request %s in-process", exc, request_id)
    _schedule_in_process(request_id)
