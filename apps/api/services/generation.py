"""Generation orchestrator: credit reservation, background pipeline and reconciliation.

Lifecycle::

    (validate + reserve) -> processing -> completed   every slot attempted
                                       -> failed      reference unreadable, storage
                                                      down, queue down or stalled

Per-slot failures are absorbed as placeholder URLs; only the fatal paths refund,
and they refund at most once per job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generation_job import GenerationJob
from services.blob_storage import build_image_key, publish_image
from services.credits import LedgerKind, find_job_entry, reserve_credits, stage_job_refund
from services.errors import (
    GenerationValidationError,
    InsufficientCredits,
    InvalidJobTransition,
    QueueUnavailable,
    ReferenceImageUnreadable,
    SlotGenerationFailed,
    StorageUnavailable,
)
from services.generation_queue import enqueue_generation_job, spawn_inline
from services.image_synthesis import SlotParameters, synthesize_image
from services.jobs import (
    JobStatus,
    claim_job_for_failure,
    create_job,
    get_job,
    is_terminal,
    update_job_status,
)
from services.prompt_catalog import (
    CAMERA_ANGLES,
    DEFAULT_ASPECT_RATIO,
    GENERATION_STYLES,
    LIGHTING_OPTIONS,
    MAX_IMAGES_PER_GENERATION,
    MAX_PROMPT_LENGTH,
    MIN_IMAGES_PER_GENERATION,
    VALID_ASPECT_RATIOS,
    select_slot_poses,
)
from services.reference_image import ReferenceImage, load_reference_image, sniff_image_mime

logger = logging.getLogger(__name__)

QUEUE_UNAVAILABLE_MESSAGE = "Generation queue unavailable. Credits were refunded."
STALLED_MESSAGE = "Generation was interrupted before it finished. Credits were refunded."
STORAGE_FAILURE_MESSAGE = "Generation results could not be saved. Credits were refunded."


@dataclass
class GenerationSpec:
    image_count: int
    prompt: str
    original_url: str
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    style: Optional[str] = None
    camera_angle: Optional[str] = None
    lighting: Optional[str] = None


def _optional_choice(value: Optional[str], allowed, field: str) -> Optional[str]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    if cleaned not in allowed:
        raise GenerationValidationError(f"{field} must be one of: {', '.join(allowed)}", field=field)
    return cleaned


def validate_generation_spec(spec: GenerationSpec) -> GenerationSpec:
    """Normalize a request or raise ``GenerationValidationError``. Pure."""
    if isinstance(spec.image_count, bool) or not isinstance(spec.image_count, int):
        raise GenerationValidationError("image_count must be an integer", field="image_count")
    if not MIN_IMAGES_PER_GENERATION <= spec.image_count <= MAX_IMAGES_PER_GENERATION:
        raise GenerationValidationError(
            f"image_count must be between {MIN_IMAGES_PER_GENERATION} and {MAX_IMAGES_PER_GENERATION}",
            field="image_count",
        )

    prompt = (spec.prompt or "").strip()
    if not prompt:
        raise GenerationValidationError("prompt must not be empty", field="prompt")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise GenerationValidationError(
            f"prompt must be at most {MAX_PROMPT_LENGTH} characters", field="prompt"
        )

    aspect_ratio = (spec.aspect_ratio or DEFAULT_ASPECT_RATIO).strip()
    if aspect_ratio not in VALID_ASPECT_RATIOS:
        raise GenerationValidationError(
            f"aspect_ratio must be one of: {', '.join(VALID_ASPECT_RATIOS)}", field="aspect_ratio"
        )

    original_url = (spec.original_url or "").strip()
    if not original_url.startswith(("http://", "https://", "data:image/")):
        raise GenerationValidationError(
            "original_url must be an absolute http(s) URL or an image data URL", field="original_url"
        )

    return GenerationSpec(
        image_count=spec.image_count,
        prompt=prompt,
        original_url=original_url,
        aspect_ratio=aspect_ratio,
        style=_optional_choice(spec.style, GENERATION_STYLES, "style"),
        camera_angle=_optional_choice(spec.camera_angle, CAMERA_ANGLES, "camera_angle"),
        lighting=_optional_choice(spec.lighting, LIGHTING_OPTIONS, "lighting"),
    )


async def submit_generation(account_id: str, spec: GenerationSpec, db: AsyncSession) -> GenerationJob:
    """Validate, reserve credits, persist the job and dispatch its pipeline.

    Reservation and job insert commit together; on ``GenerationValidationError``
    or ``InsufficientCredits`` nothing is written.
    """
    normalized = validate_generation_spec(spec)
    job_id = str(uuid.uuid4())
    cost = normalized.image_count * max(int(settings.CREDIT_COST_PER_IMAGE), 1)

    try:
        await reserve_credits(
            account_id,
            db,
            amount=cost,
            related_job_id=job_id,
            description=f"Generated {normalized.image_count} image(s)",
        )
        job = await create_job(
            db,
            job_id=job_id,
            account_id=account_id,
            original_url=normalized.original_url,
            requested_image_count=normalized.image_count,
            prompt=normalized.prompt,
            aspect_ratio=normalized.aspect_ratio,
            style=normalized.style,
            camera_angle=normalized.camera_angle,
            lighting=normalized.lighting,
            model_used=settings.GEMINI_IMAGE_MODEL,
        )
        await db.commit()
    except (InsufficientCredits, StorageUnavailable):
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable("Could not persist generation request", exc) from exc

    logger.info(
        "Reserved %s credit(s) for job %s (account %s, %s image(s))",
        cost,
        job_id,
        account_id,
        normalized.image_count,
    )
    await dispatch_generation(job_id)
    await db.refresh(job)
    return job


async def dispatch_generation(job_id: str) -> Optional[str]:
    """Hand the job to the background runner; compensate if that is impossible."""
    if settings.GENERATION_DISPATCH_MODE == "inline":
        spawn_inline(job_id, process_generation_job_async)
        return None

    try:
        queue_job = enqueue_generation_job(job_id)
    except Exception as exc:
        logger.exception("Could not enqueue generation job %s", job_id)
        await fail_job_with_refund(job_id, QUEUE_UNAVAILABLE_MESSAGE)
        raise QueueUnavailable(str(exc)) from exc

    await update_job_status(job_id, queue_job_id=queue_job.id)
    return queue_job.id


async def fail_job_with_refund(job_id: str, reason: str) -> None:
    """Fatal-path compensation: record ``failed`` and refund the reservation once.

    The ``processing -> failed`` claim and the refund entry commit in one
    transaction. The claim is a conditional UPDATE that also bumps the job's
    version counter, so a pipeline write racing it either lands first (and the
    claim finds a terminal job and refunds nothing) or fails its version check.

    A refund that cannot be written is the one unrecoverable condition here: money
    was taken and nothing was delivered. It is logged as a reconciliation alarm and
    the job is still marked failed when the store allows it.
    """
    refund_amount: Optional[int] = None
    try:
        async with async_session_maker() as db:
            account_id = await claim_job_for_failure(db, job_id, reason)
            if account_id is None:
                await db.rollback()
                logger.info("Job %s is missing or already terminal; skipping compensation", job_id)
                return

            debit = await find_job_entry(job_id, LedgerKind.GENERATION, db)
            if debit is not None:
                refund_amount = -int(debit.amount)
                await stage_job_refund(
                    account_id,
                    db,
                    job_id=job_id,
                    amount=refund_amount,
                    reason=reason,
                )
            else:
                logger.error("Job %s has no reservation entry; nothing to refund", job_id)
            await db.commit()
    except (StorageUnavailable, SQLAlchemyError):
        logger.critical(
            "RECONCILIATION ALARM: compensation for job %s failed (refund of %s credit(s)); "
            "credits were taken and no refund is recorded",
            job_id,
            refund_amount if refund_amount is not None else "unknown",
            exc_info=True,
        )
    else:
        logger.info("Job %s failed: %s", job_id, reason)
        return

    try:
        await update_job_status(
            job_id,
            status=JobStatus.FAILED,
            error_message=reason,
            completed=True,
        )
    except InvalidJobTransition:
        logger.warning("Job %s reached a terminal state before it could be failed", job_id)
    except StorageUnavailable:
        logger.critical(
            "Job %s could not be marked failed and stays in processing; the stalled-job sweep will retry",
            job_id,
            exc_info=True,
        )
    else:
        logger.info("Job %s marked failed without a refund: %s", job_id, reason)


def _slot_parameters(job: GenerationJob, first_slot: int) -> List[SlotParameters]:
    poses = select_slot_poses(job.requested_image_count, seed=job.id)
    return [
        SlotParameters(
            slot_index=index,
            prompt=job.prompt,
            pose=poses[index],
            aspect_ratio=job.aspect_ratio or DEFAULT_ASPECT_RATIO,
            style=job.style,
            camera_angle=job.camera_angle,
            lighting=job.lighting,
        )
        for index in range(first_slot, int(job.requested_image_count))
    ]


async def _generate_slot(job_id: str, reference: ReferenceImage, slot: SlotParameters) -> str:
    """Produce one slot's URL, absorbing any failure as the placeholder."""
    try:
        image = await synthesize_image(reference, slot)
        mime_type = sniff_image_mime(image) or "image/png"
        key = build_image_key(job_id, slot.slot_index, mime_type)
        return await publish_image(key, image, mime_type)
    except Exception as exc:
        failure = SlotGenerationFailed(slot.slot_index, str(exc))
        logger.warning("Job %s: %s", job_id, failure, exc_info=True)
        return settings.PLACEHOLDER_IMAGE_URL


async def _run_slots(job_id: str, reference: ReferenceImage, slots: List[SlotParameters]) -> None:
    """Run slots with bounded concurrency, publishing URLs strictly in slot order."""
    if not slots:
        return

    semaphore = asyncio.Semaphore(max(int(settings.GENERATION_SLOT_CONCURRENCY), 1))
    flush_lock = asyncio.Lock()
    finished: Dict[int, str] = {}
    next_slot = slots[0].slot_index

    async def _flush() -> None:
        nonlocal next_slot
        async with flush_lock:
            ready: List[str] = []
            while next_slot + len(ready) in finished:
                ready.append(finished.pop(next_slot + len(ready)))
            if ready:
                await update_job_status(job_id, append_image_urls=ready, start_slot=next_slot)
                next_slot += len(ready)

    async def _run(slot: SlotParameters) -> None:
        async with semaphore:
            url = await _generate_slot(job_id, reference, slot)
        finished[slot.slot_index] = url
        await _flush()

    tasks = [asyncio.create_task(_run(slot)) for slot in slots]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _elapsed_ms_since(created_at: Optional[datetime]) -> Optional[int]:
    """Wall-clock time since submission, spanning every attempt of a resumed job."""
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return max(int((datetime.now(timezone.utc) - created_at).total_seconds() * 1000), 0)


async def process_generation_job_async(job_id: str) -> None:
    """Pipeline run for one job. Safe to re-run: terminal jobs are skipped and a
    partially published job resumes at its first unpublished slot."""
    job = await get_job(job_id)
    if not job:
        logger.warning("Generation job %s not found", job_id)
        return
    if is_terminal(job.status):
        logger.info("Generation job %s already %s; nothing to do", job_id, job.status)
        return

    job = await update_job_status(job_id, increment_attempts=True)

    try:
        reference = await load_reference_image(job.original_url)
    except ReferenceImageUnreadable as exc:
        logger.warning("Job %s reference image unreadable: %s", job_id, exc)
        await fail_job_with_refund(job_id, str(exc))
        return

    first_slot = len(job.image_urls or [])
    if first_slot:
        logger.info("Resuming job %s at slot %s/%s", job_id, first_slot + 1, job.requested_image_count)

    try:
        await _run_slots(job_id, reference, _slot_parameters(job, first_slot))
        await update_job_status(
            job_id,
            status=JobStatus.COMPLETED,
            processing_time_ms=_elapsed_ms_since(job.created_at),
            completed=True,
        )
    except InvalidJobTransition as exc:
        logger.warning("Job %s was finalized elsewhere during the run: %s", job_id, exc)
        return
    except StorageUnavailable:
        logger.critical("Job store unavailable while processing job %s", job_id, exc_info=True)
        await fail_job_with_refund(job_id, STORAGE_FAILURE_MESSAGE)
        return

    logger.info("Generation job %s completed", job_id)


def process_generation_job(job_id: str) -> None:
    """RQ worker entrypoint for generation jobs."""

    async def _run() -> None:
        from database import engine

        try:
            await process_generation_job_async(job_id)
        finally:
            await engine.dispose()

    asyncio.run(_run())


async def recover_stalled_generation_jobs(max_age_minutes: Optional[int] = None) -> int:
    """Fail and refund jobs stuck in processing after restarts/worker interruptions."""
    age = int(max_age_minutes or settings.STALLED_JOB_TIMEOUT_MINUTES)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(age, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(GenerationJob.id).where(
                GenerationJob.status == JobStatus.PROCESSING,
                GenerationJob.created_at < cutoff,
            )
        )
        stalled_ids = list(result.scalars().all())

    for job_id in stalled_ids:
        await fail_job_with_refund(job_id, STALLED_MESSAGE)
    return len(stalled_ids)
