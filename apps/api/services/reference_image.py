"""Reference photo resolution for the generation pipeline."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import settings
from services.errors import ReferenceImageUnreadable

logger = logging.getLogger(__name__)


@dataclass
class ReferenceImage:
    data: bytes
    mime_type: str


def sniff_image_mime(data: bytes) -> Optional[str]:
    """Return the MIME type for JPEG/PNG/WEBP payloads, else ``None``."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _decode_data_url(url: str) -> bytes:
    header, _, payload = url.partition(",")
    if not payload or ";base64" not in header:
        raise ReferenceImageUnreadable("Reference image data URL must be base64 encoded")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ReferenceImageUnreadable("Reference image data URL is not valid base64") from exc


def _too_large(size: int, max_bytes: int) -> ReferenceImageUnreadable:
    return ReferenceImageUnreadable(f"Reference image is too large ({size} bytes, limit {max_bytes})")


async def _download(url: str, client: Optional[httpx.AsyncClient]) -> bytes:
    """Stream the body, aborting as soon as it exceeds ``MAX_REFERENCE_IMAGE_BYTES``."""
    max_bytes = int(settings.MAX_REFERENCE_IMAGE_BYTES)
    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=settings.REFERENCE_DOWNLOAD_TIMEOUT_SECONDS,
        follow_redirects=True,
    )
    try:
        async with http.stream("GET", url) as response:
            if response.status_code != 200:
                raise ReferenceImageUnreadable(
                    f"Failed to download reference image: HTTP {response.status_code}"
                )
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise _too_large(int(declared), max_bytes)

            buffer = bytearray()
            async for chunk in response.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) > max_bytes:
                    raise _too_large(len(buffer), max_bytes)
            return bytes(buffer)
    except httpx.HTTPError as exc:
        raise ReferenceImageUnreadable(f"Failed to download reference image: {exc}") from exc
    finally:
        if owns_client:
            await http.aclose()


async def load_reference_image(
    original_url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> ReferenceImage:
    """Fetch and validate the reference photo once per job."""
    url = (original_url or "").strip()
    if url.startswith("data:"):
        data = _decode_data_url(url)
    elif url.startswith("http://") or url.startswith("https://"):
        data = await _download(url, client)
    else:
        raise ReferenceImageUnreadable("Reference image URL must be http(s) or a data URL")

    if not data:
        raise ReferenceImageUnreadable("Reference image is empty")
    max_bytes = int(settings.MAX_REFERENCE_IMAGE_BYTES)
    if len(data) > max_bytes:
        raise _too_large(len(data), max_bytes)

    mime_type = sniff_image_mime(data)
    if not mime_type:
        raise ReferenceImageUnreadable("Reference image is not a JPEG, PNG or WEBP file")

    logger.info("Loaded reference image (%s, %d bytes)", mime_type, len(data))
    return ReferenceImage(data=data, mime_type=mime_type)
