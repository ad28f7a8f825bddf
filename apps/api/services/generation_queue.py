"""Durable generation job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Set

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings

logger = logging.getLogger(__name__)

GENERATION_QUEUE_NAME = "generation_jobs"

_inline_tasks: Set["asyncio.Task[None]"] = set()


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_generation_job(job_id: str) -> Job:
    """Enqueue a generation pipeline run with retry/timeouts for durability.

    A redelivered run is safe: the pipeline skips terminal jobs and resumes
    from the first unpublished slot.
    """
    queue = get_generation_queue()
    return queue.enqueue(
        "services.generation.process_generation_job",
        job_id,
        job_id=f"generation:{job_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def spawn_inline(job_id: str, runner: Callable[[str], Awaitable[None]]) -> "asyncio.Task[None]":
    """Run the pipeline as a supervised task in the current event loop."""

    async def _supervised() -> None:
        try:
            await runner(job_id)
        except Exception:
            logger.exception("Inline generation run for job %s crashed", job_id)

    task = asyncio.create_task(_supervised(), name=f"generation:{job_id}")
    _inline_tasks.add(task)
    task.add_done_callback(_inline_tasks.discard)
    return task


async def drain_inline_tasks() -> None:
    """Wait for in-flight inline runs (used at shutdown and in tests)."""
    while _inline_tasks:
        await asyncio.gather(*list(_inline_tasks), return_exceptions=True)
