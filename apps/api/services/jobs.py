"""Generation job store and status reader.

Every mutation reads the row fresh inside its own transaction, so callers never
patch from a stale in-memory copy. Status only moves forward and ``image_urls``
only grows, one slot index at a time. Rows carry a version counter; a write that
lost a race with another writer is retried against the fresh row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import not_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from database import async_session_maker
from models.generation_job import GenerationJob
from services.errors import InvalidJobTransition, JobNotFound, StorageUnavailable

logger = logging.getLogger(__name__)

STALE_WRITE_ATTEMPTS = 3


class JobStatus:
    """Valid generation job statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
}


def is_terminal(status: Optional[str]) -> bool:
    return status in JobStatus.TERMINAL


async def create_job(
    db: AsyncSession,
    *,
    job_id: str,
    account_id: str,
    original_url: str,
    requested_image_count: int,
    prompt: str,
    aspect_ratio: str,
    style: Optional[str] = None,
    camera_angle: Optional[str] = None,
    lighting: Optional[str] = None,
    model_used: Optional[str] = None,
) -> GenerationJob:
    """Stage a new job in ``processing``. The caller commits."""
    job = GenerationJob(
        id=job_id,
        account_id=account_id,
        original_url=original_url,
        requested_image_count=requested_image_count,
        prompt=prompt,
        aspect_ratio=aspect_ratio,
        style=style,
        camera_angle=camera_angle,
        lighting=lighting,
        status=JobStatus.PROCESSING,
        image_urls=[],
        attempts=0,
        model_used=model_used,
    )
    db.add(job)
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        raise StorageUnavailable("Could not create generation job", exc) from exc
    return job


async def get_job(job_id: str) -> Optional[GenerationJob]:
    try:
        async with async_session_maker() as db:
            result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
            return result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"Could not load job {job_id}", exc) from exc


async def update_job_status(
    job_id: str,
    *,
    status: Optional[str] = None,
    append_image_urls: Optional[Sequence[str]] = None,
    start_slot: Optional[int] = None,
    error_message: Optional[str] = None,
    queue_job_id: Optional[str] = None,
    processing_time_ms: Optional[int] = None,
    increment_attempts: bool = False,
    completed: bool = False,
) -> GenerationJob:
    """Apply a partial update to a job.

    ``append_image_urls`` are written starting at ``start_slot``, which must equal
    the current length of ``image_urls``. Replaying an identical append is a
    no-op; anything that would shrink or reorder the list is rejected.
    """
    if status is not None and status not in JobStatus.ALL:
        raise ValueError(f"unknown job status: {status}")

    for attempt in range(1, STALE_WRITE_ATTEMPTS + 1):
        try:
            async with async_session_maker() as db:
                result = await db.execute(
                    select(GenerationJob).where(GenerationJob.id == job_id).with_for_update()
                )
                job = result.scalar_one_or_none()
                if not job:
                    raise JobNotFound(f"Generation job {job_id} not found")

                current_urls: List[str] = list(job.image_urls or [])

                if status is not None and status != job.status:
                    if is_terminal(job.status):
                        logger.error(
                            "Rejected status change on terminal job %s: %s -> %s",
                            job_id,
                            job.status,
                            status,
                        )
                        raise InvalidJobTransition(
                            f"Job {job_id} is already {job.status}; cannot move to {status}"
                        )
                    if status not in ALLOWED_TRANSITIONS.get(job.status, set()):
                        logger.error("Rejected backward transition on job %s: %s -> %s", job_id, job.status, status)
                        raise InvalidJobTransition(f"Job {job_id} cannot move from {job.status} to {status}")

                if append_image_urls:
                    new_urls = [str(url) for url in append_image_urls]
                    slot = len(current_urls) if start_slot is None else int(start_slot)
                    if slot < len(current_urls):
                        if current_urls[slot:slot + len(new_urls)] != new_urls:
                            logger.error(
                                "Rejected overwrite of published slots on job %s at slot %s",
                                job_id,
                                slot,
                            )
                            raise InvalidJobTransition(f"Job {job_id} slot {slot} is already published")
                        new_urls = []
                    elif slot > len(current_urls):
                        raise InvalidJobTransition(
                            f"Job {job_id} has {len(current_urls)} slots; cannot append at slot {slot}"
                        )
                    elif is_terminal(job.status):
                        logger.error("Rejected image append on terminal job %s", job_id)
                        raise InvalidJobTransition(f"Job {job_id} is already {job.status}")
                    if new_urls:
                        current_urls = current_urls + new_urls
                        job.image_urls = current_urls

                if status == JobStatus.COMPLETED and job.status != JobStatus.COMPLETED:
                    if len(current_urls) < int(job.requested_image_count):
                        raise InvalidJobTransition(
                            f"Job {job_id} has {len(current_urls)}/{job.requested_image_count} slots attempted"
                        )

                if status is not None:
                    job.status = status
                if error_message is not None:
                    job.error_message = error_message[:1000]
                if queue_job_id is not None:
                    job.queue_job_id = queue_job_id
                if processing_time_ms is not None:
                    job.processing_time_ms = max(int(processing_time_ms), 0)
                if increment_attempts:
                    job.attempts = max(int(job.attempts or 0), 0) + 1
                if completed and job.completed_at is None:
                    job.completed_at = datetime.now(timezone.utc)
                await db.commit()
                await db.refresh(job)
                return job
        except StaleDataError as exc:
            if attempt == STALE_WRITE_ATTEMPTS:
                raise StorageUnavailable(f"Job {job_id} kept changing during update", exc) from exc
            logger.info("Job %s changed concurrently; retrying update (%s/%s)", job_id, attempt, STALE_WRITE_ATTEMPTS)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Could not update job {job_id}", exc) from exc


async def get_job_for_account(job_id: str, account_id: str, db: AsyncSession) -> GenerationJob:
    """Return the job only when ``account_id`` owns it."""
    result = await db.execute(
        select(GenerationJob).where(
            GenerationJob.id == job_id,
            GenerationJob.account_id == account_id,
        )
    )
    job = result.scalar_one_or_none()
    if not job:
        raise JobNotFound("Generation not found")
    return job


async def claim_job_for_failure(db: AsyncSession, job_id: str, reason: str) -> Optional[str]:
    """Move a non-terminal job to ``failed`` inside the caller's transaction.

    A single conditional UPDATE, so a job that another writer finalized first is
    left untouched. Returns the owning account id, or ``None`` when the job is
    missing or already terminal. The caller commits.
    """
    result = await db.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status.notin_(JobStatus.TERMINAL),
        )
        .values(
            status=JobStatus.FAILED,
            error_message=reason[:1000],
            completed_at=datetime.now(timezone.utc),
            version_id=GenerationJob.version_id + 1,
        )
        .returning(GenerationJob.account_id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def toggle_favorite(job_id: str, account_id: str, db: AsyncSession) -> bool:
    """Flip ``is_favorite`` on a job the account owns and return the new value."""
    try:
        result = await db.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,
                GenerationJob.account_id == account_id,
            )
            .values(
                is_favorite=not_(GenerationJob.is_favorite),
                version_id=GenerationJob.version_id + 1,
            )
            .returning(GenerationJob.is_favorite)
            .execution_options(synchronize_session=False)
        )
        is_favorite = result.scalar_one_or_none()
        if is_favorite is None:
            await db.rollback()
            raise JobNotFound("Generation not found")
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable(f"Could not update job {job_id}", exc) from exc
    return bool(is_favorite)


async def list_jobs_by_account(
    account_id: str,
    db: AsyncSession,
    *,
    limit: Optional[int] = None,
) -> List[GenerationJob]:
    row_limit = int(limit or settings.GENERATION_HISTORY_LIMIT)
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.account_id == account_id)
        .order_by(GenerationJob.created_at.desc())
        .limit(max(row_limit, 1))
    )
    return list(result.scalars().all())
