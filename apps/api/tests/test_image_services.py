import base64
import json
from unittest.mock import patch

import httpx
import pytest

from services.blob_storage import BlobPublishError, build_image_key, publish_image
from services.errors import ReferenceImageUnreadable
from services.image_synthesis import (
    ImageSynthesisError,
    SlotParameters,
    build_request_body,
    extract_image_bytes,
    synthesize_image,
)
from services.prompt_catalog import CATALOG_POSES, build_slot_prompt, select_slot_poses
from services.reference_image import ReferenceImage, load_reference_image, sniff_image_mime


JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
REFERENCE = ReferenceImage(data=JPEG_BYTES, mime_type="image/jpeg")
SLOT = SlotParameters(
    slot_index=0,
    prompt="silk blouse, soft studio light",
    pose="Standing confidently with hands on hips, looking directly at the camera.",
    aspect_ratio="landscape",
    style="Editorial",
    lighting="Golden Hour",
)


def _image_response(data: bytes = PNG_BYTES) -> dict:
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "here you go"},
                        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(data).decode()}},
                    ]
                }
            }
        ]
    }


@pytest.fixture
def gemini_settings():
    with (
        patch("services.image_synthesis.settings.GEMINI_API_KEY", "test-key"),
        patch("services.image_synthesis.settings.GEMINI_RETRY_BACKOFF_SECONDS", 0),
        patch("services.image_synthesis.settings.GEMINI_MAX_RETRIES", 2),
    ):
        yield


def test_sniff_image_mime_recognizes_supported_formats():
    assert sniff_image_mime(JPEG_BYTES) == "image/jpeg"
    assert sniff_image_mime(PNG_BYTES) == "image/png"
    assert sniff_image_mime(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff_image_mime(b"GIF89a") is None


@pytest.mark.asyncio
async def test_reference_image_from_data_url():
    url = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()

    reference = await load_reference_image(url)

    assert reference.mime_type == "image/png"
    assert reference.data == PNG_BYTES


@pytest.mark.asyncio
async def test_reference_image_download_failures_are_unreadable():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/missing.jpg":
            return httpx.Response(404)
        return httpx.Response(200, content=b"<html>not an image</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ReferenceImageUnreadable, match="HTTP 404"):
            await load_reference_image("https://images.test/missing.jpg", client=client)
        with pytest.raises(ReferenceImageUnreadable, match="JPEG, PNG or WEBP"):
            await load_reference_image("https://images.test/page.jpg", client=client)


@pytest.mark.asyncio
async def test_reference_image_size_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=JPEG_BYTES)

    with patch("services.reference_image.settings.MAX_REFERENCE_IMAGE_BYTES", 8):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ReferenceImageUnreadable, match="too large"):
                await load_reference_image("https://images.test/big.jpg", client=client)


@pytest.mark.asyncio
async def test_reference_download_stops_reading_once_over_the_limit():
    chunks_served = []

    async def _endless_body():
        for index in range(1000):
            chunks_served.append(index)
            yield JPEG_BYTES if index == 0 else b"\x00" * 64

    def handler(request: httpx.Request) -> httpx.Response:
        # No Content-Length, so the limit has to be enforced while reading.
        return httpx.Response(200, content=_endless_body())

    with patch("services.reference_image.settings.MAX_REFERENCE_IMAGE_BYTES", 256):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ReferenceImageUnreadable, match="too large"):
                await load_reference_image("https://images.test/endless.jpg", client=client)

    assert len(chunks_served) < 10


@pytest.mark.asyncio
async def test_reference_image_rejects_unencoded_data_url():
    with pytest.raises(ReferenceImageUnreadable):
        await load_reference_image("data:image/png,rawbytes")


def test_slot_prompt_carries_direction_and_options():
    prompt = build_slot_prompt(
        "  linen suit  ",
        pose="A relaxed standing pose.",
        aspect_ratio="square",
        style="Vintage",
        camera_angle="Low Angle",
        lighting="Backlight",
    )

    assert "Creative direction: linen suit" in prompt
    assert "Pose: A relaxed standing pose." in prompt
    assert "Style: vintage film aesthetic" in prompt
    assert "Camera: shot from a low angle looking up." in prompt
    assert "Lighting: rim backlighting" in prompt
    assert "square aspect ratio" in prompt


def test_slot_poses_are_distinct_and_stable_per_seed():
    poses = select_slot_poses(8, seed="job-123")

    assert len(set(poses)) == 8
    assert all(pose in CATALOG_POSES for pose in poses)
    assert select_slot_poses(8, seed="job-123") == poses


def test_request_body_embeds_reference_and_aspect_ratio():
    body = build_request_body(REFERENCE, SLOT)

    parts = body["contents"][0]["parts"]
    assert parts[0]["inline_data"]["mime_type"] == "image/jpeg"
    assert base64.b64decode(parts[0]["inline_data"]["data"]) == JPEG_BYTES
    assert "silk blouse" in parts[1]["text"]
    assert body["generationConfig"]["responseModalities"] == ["IMAGE"]
    assert body["generationConfig"]["imageConfig"]["aspectRatio"] == "4:3"


def test_extract_image_bytes_reports_blocked_prompts():
    assert extract_image_bytes(_image_response()) == PNG_BYTES
    with pytest.raises(ImageSynthesisError, match="SAFETY"):
        extract_image_bytes({"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})
    with pytest.raises(ImageSynthesisError, match="No image data"):
        extract_image_bytes({"candidates": [{"content": {"parts": [{"text": "sorry"}]}}]})


@pytest.mark.asyncio
async def test_synthesize_retries_transient_provider_errors(gemini_settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json=_image_response())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        image = await synthesize_image(REFERENCE, SLOT, client=client)

    assert image == PNG_BYTES
    assert len(calls) == 2
    assert calls[0].headers["x-goog-api-key"] == "test-key"
    assert calls[0].url.path.endswith(":generateContent")
    assert json.loads(calls[0].content)["generationConfig"]["imageConfig"]["aspectRatio"] == "4:3"


@pytest.mark.asyncio
async def test_synthesize_does_not_retry_client_errors(gemini_settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, text="bad request")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ImageSynthesisError) as exc_info:
            await synthesize_image(REFERENCE, SLOT, client=client)

    assert exc_info.value.status_code == 400
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_synthesize_gives_up_after_max_retries(gemini_settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, text="quota")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ImageSynthesisError) as exc_info:
            await synthesize_image(REFERENCE, SLOT, client=client)

    assert exc_info.value.status_code == 429
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_synthesize_requires_api_key():
    with patch("services.image_synthesis.settings.GEMINI_API_KEY", ""):
        with pytest.raises(ValueError, match="GEMINI_API_KEY"):
            await synthesize_image(REFERENCE, SLOT)


def test_image_keys_are_deterministic_per_slot():
    assert build_image_key("job-1", 0, "image/png") == "generations/job-1/image-1.png"
    assert build_image_key("job-1", 2, "image/jpeg") == "generations/job-1/image-3.jpg"


@pytest.mark.asyncio
async def test_local_blob_backend_writes_file_and_returns_public_url(tmp_path):
    with (
        patch("services.blob_storage.settings.BLOB_STORAGE_BACKEND", "local"),
        patch("services.blob_storage.settings.BLOB_LOCAL_DIR", str(tmp_path)),
        patch("services.blob_storage.settings.BLOB_PUBLIC_BASE_URL", "http://assets.test/blobs/"),
    ):
        url = await publish_image("generations/job-9/image-1.png", PNG_BYTES, "image/png")
        with pytest.raises(BlobPublishError):
            await publish_image("../escape.png", PNG_BYTES, "image/png")

    assert url == "http://assets.test/blobs/generations/job-9/image-1.png"
    assert (tmp_path / "generations" / "job-9" / "image-1.png").read_bytes() == PNG_BYTES


@pytest.mark.asyncio
async def test_s3_backend_requires_bucket():
    with (
        patch("services.blob_storage.settings.BLOB_STORAGE_BACKEND", "s3"),
        patch("services.blob_storage.settings.AWS_BUCKET_GENERATIONS", ""),
    ):
        with pytest.raises(BlobPublishError, match="AWS_BUCKET_GENERATIONS"):
            await publish_image("generations/job-9/image-1.png", PNG_BYTES, "image/png")
