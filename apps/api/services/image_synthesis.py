"""Gemini image synthesis adapter.

One call produces one image. Timeouts and retries are owned here; callers only
see the final bytes or an ``ImageSynthesisError``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from config import require_gemini_api_key, settings
from services.prompt_catalog import ASPECT_RATIO_PROVIDER_VALUES, build_slot_prompt
from services.reference_image import ReferenceImage

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class ImageSynthesisError(Exception):
    """Provider returned no usable image."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class SlotParameters:
    slot_index: int
    prompt: str
    pose: str
    aspect_ratio: str = "portrait"
    style: Optional[str] = None
    camera_angle: Optional[str] = None
    lighting: Optional[str] = None


def build_request_body(reference: ReferenceImage, slot: SlotParameters) -> Dict[str, Any]:
    prompt = build_slot_prompt(
        slot.prompt,
        pose=slot.pose,
        aspect_ratio=slot.aspect_ratio,
        style=slot.style,
        camera_angle=slot.camera_angle,
        lighting=slot.lighting,
    )
    return {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": reference.mime_type,
                            "data": base64.b64encode(reference.data).decode("utf-8"),
                        }
                    },
                    {"text": prompt},
                ],
            }
        ],
        "generationConfig": {
            "responseModalities": ["IMAGE"],
            "imageConfig": {
                "aspectRatio": ASPECT_RATIO_PROVIDER_VALUES.get(slot.aspect_ratio, "3:4"),
            },
        },
    }


def extract_image_bytes(payload: Dict[str, Any]) -> bytes:
    """Pull the first inline image out of a generateContent response."""
    for candidate in payload.get("candidates") or []:
        parts = ((candidate or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data") or {}
            data = inline.get("data")
            if data:
                try:
                    return base64.b64decode(data)
                except (binascii.Error, ValueError) as exc:
                    raise ImageSynthesisError("Provider returned malformed image data") from exc
    block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise ImageSynthesisError(f"Provider blocked the request: {block_reason}")
    raise ImageSynthesisError("No image data in provider response")


async def synthesize_image(
    reference: ReferenceImage,
    slot: SlotParameters,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """Generate one image for ``slot`` from the reference photo."""
    api_key = require_gemini_api_key()
    url = f"{settings.GEMINI_API_BASE.rstrip('/')}/models/{settings.GEMINI_IMAGE_MODEL}:generateContent"
    body = build_request_body(reference, slot)
    headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
    max_attempts = max(int(settings.GEMINI_MAX_RETRIES), 0) + 1

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=settings.GEMINI_TIMEOUT_SECONDS)
    try:
        last_error: Optional[ImageSynthesisError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = await http.post(url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = ImageSynthesisError(f"Provider request failed: {exc}")
            else:
                if response.status_code == 200:
                    return extract_image_bytes(response.json())
                last_error = ImageSynthesisError(
                    f"Provider error: {response.status_code} {response.text[:300]}",
                    status_code=response.status_code,
                )
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise last_error

            if attempt < max_attempts:
                delay = float(settings.GEMINI_RETRY_BACKOFF_SECONDS) * (2 ** (attempt - 1))
                logger.warning(
                    "Slot %s synthesis attempt %s/%s failed (%s); retrying in %.1fs",
                    slot.slot_index + 1,
                    attempt,
                    max_attempts,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)
        raise last_error or ImageSynthesisError("Provider request failed")
    finally:
        if owns_client:
            await http.aclose()
