"""Blob publisher for generated images (S3 or local disk)."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import settings

logger = logging.getLogger(__name__)

EXTENSION_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}

_s3_client: Optional[Any] = None


class BlobPublishError(Exception):
    """Image bytes could not be stored."""


def _get_s3_client():
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        )
    return _s3_client


def build_image_key(job_id: str, slot_index: int, mime_type: str) -> str:
    """Deterministic per-slot key, so a retried slot overwrites rather than duplicates."""
    ext = EXTENSION_BY_MIME.get(mime_type, ".png")
    return f"generations/{job_id}/image-{slot_index + 1}{ext}"


def build_s3_url(key: str) -> str:
    return f"https://{settings.AWS_BUCKET_GENERATIONS}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"


def _put_s3(key: str, data: bytes, mime_type: str) -> str:
    if not settings.AWS_BUCKET_GENERATIONS:
        raise BlobPublishError("AWS_BUCKET_GENERATIONS is not configured")
    try:
        _get_s3_client().put_object(
            Bucket=settings.AWS_BUCKET_GENERATIONS,
            Key=key,
            Body=data,
            ContentType=mime_type,
        )
    except (BotoCoreError, ClientError) as exc:
        raise BlobPublishError(f"S3 upload failed for {key}: {exc}") from exc
    return build_s3_url(key)


def _put_local(key: str, data: bytes) -> str:
    root = Path(settings.BLOB_LOCAL_DIR).resolve()
    target = (root / key).resolve()
    if root not in target.parents:
        raise BlobPublishError(f"Blob key escapes storage root: {key}")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    except OSError as exc:
        raise BlobPublishError(f"Local blob write failed for {key}: {exc}") from exc
    return f"{settings.BLOB_PUBLIC_BASE_URL.rstrip('/')}/{key}"


async def publish_image(key: str, data: bytes, mime_type: str = "image/png") -> str:
    """Store ``data`` under ``key`` and return its public URL."""
    if not data:
        raise BlobPublishError("Refusing to publish an empty image")
    if settings.BLOB_STORAGE_BACKEND == "local":
        url = await asyncio.to_thread(_put_local, key, data)
    else:
        url = await asyncio.to_thread(_put_s3, key, data, mime_type)
    logger.info("Published %s (%d bytes)", key, len(data))
    return url
