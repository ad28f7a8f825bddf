"""Generation job router: submission, status polling and favorites."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.generation_job import GenerationJob
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import ensure_account
from services.errors import (
    GenerationValidationError,
    InsufficientCredits,
    JobNotFound,
    QueueUnavailable,
    StorageUnavailable,
)
from services.generation import GenerationSpec, submit_generation
from services.jobs import get_job_for_account, list_jobs_by_account, toggle_favorite
from services.prompt_catalog import DEFAULT_ASPECT_RATIO

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateGenerationRequest(BaseModel):
    image_count: int
    prompt: str
    original_url: str = Field(max_length=20_000_000)
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    style: Optional[str] = None
    camera_angle: Optional[str] = None
    lighting: Optional[str] = None


class CreateGenerationResponse(BaseModel):
    job_id: str
    status: str
    requested_image_count: int
    poll_interval_ms: int


class FavoriteResponse(BaseModel):
    job_id: str
    is_favorite: bool


class GenerationJobResponse(BaseModel):
    job_id: str
    status: str
    requested_image_count: int
    image_urls: List[str]
    placeholder_slots: List[int]
    prompt: str
    aspect_ratio: str
    style: Optional[str] = None
    camera_angle: Optional[str] = None
    lighting: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    is_favorite: bool = False
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


def _serialize_job(job: GenerationJob) -> GenerationJobResponse:
    image_urls = [str(url) for url in (job.image_urls or [])]
    return GenerationJobResponse(
        job_id=job.id,
        status=job.status,
        requested_image_count=int(job.requested_image_count),
        image_urls=image_urls,
        placeholder_slots=[
            index for index, url in enumerate(image_urls) if url == settings.PLACEHOLDER_IMAGE_URL
        ],
        prompt=job.prompt,
        aspect_ratio=job.aspect_ratio,
        style=job.style,
        camera_angle=job.camera_angle,
        lighting=job.lighting,
        error_message=job.error_message,
        processing_time_ms=job.processing_time_ms,
        is_favorite=bool(job.is_favorite),
        created_at=job.created_at.isoformat() if job.created_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
    )


@router.post("", response_model=CreateGenerationResponse)
async def create_generation(
    request: CreateGenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Reserve credits and start a generation job. Returns immediately."""
    await ensure_account(auth.account_id, db, email=auth.email)

    spec = GenerationSpec(
        image_count=request.image_count,
        prompt=request.prompt,
        original_url=request.original_url,
        aspect_ratio=request.aspect_ratio,
        style=request.style,
        camera_angle=request.camera_angle,
        lighting=request.lighting,
    )
    try:
        job = await submit_generation(auth.account_id, spec, db)
    except GenerationValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except InsufficientCredits as exc:
        raise HTTPException(
            status_code=402,
            detail=f"{exc} Top up credits to continue.",
        ) from exc
    except QueueUnavailable as exc:
        raise HTTPException(
            status_code=503,
            detail="Generation queue unavailable. Credits were refunded; retry shortly.",
        ) from exc
    except StorageUnavailable as exc:
        logger.exception("Storage unavailable while submitting generation for %s", auth.account_id)
        raise HTTPException(status_code=503, detail="Storage unavailable. Retry shortly.") from exc

    return CreateGenerationResponse(
        job_id=job.id,
        status=job.status,
        requested_image_count=int(job.requested_image_count),
        poll_interval_ms=int(settings.GENERATION_POLL_INTERVAL_MS),
    )


@router.get("", response_model=List[GenerationJobResponse])
async def list_generations(
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's generation jobs, newest first."""
    jobs = await list_jobs_by_account(auth.account_id, db, limit=limit)
    return [_serialize_job(job) for job in jobs]


@router.get("/{job_id}", response_model=GenerationJobResponse)
async def get_generation(
    job_id: str,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Poll one generation job owned by the caller."""
    try:
        job = await get_job_for_account(job_id, auth.account_id, db)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Generation not found") from exc
    response.headers["Cache-Control"] = "no-store"
    return _serialize_job(job)


@router.post("/{job_id}/favorite", response_model=FavoriteResponse)
async def toggle_generation_favorite(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Flip the favorite flag on one of the caller's generations."""
    try:
        is_favorite = await toggle_favorite(job_id, auth.account_id, db)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Generation not found") from exc
    except StorageUnavailable as exc:
        logger.exception("Storage unavailable while toggling favorite on %s", job_id)
        raise HTTPException(status_code=503, detail="Storage unavailable. Retry shortly.") from exc
    return FavoriteResponse(job_id=job_id, is_favorite=is_favorite)
