import asyncio
from unittest.mock import patch

import pytest

from conftest import auth_header
from services.credits import get_balance, list_entries
from services.generation_queue import drain_inline_tasks
from services.reference_image import ReferenceImage


OWNER_ID = "router-owner"
OTHER_ID = "router-other"
OWNER_HEADERS = auth_header(OWNER_ID)
OTHER_HEADERS = auth_header(OTHER_ID)
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _payload(count: int = 2, **overrides) -> dict:
    payload = {
        "image_count": count,
        "prompt": "tailored camel coat, autumn street",
        "original_url": "https://images.test/reference.jpg",
        "aspect_ratio": "portrait",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_submit_reserves_credits_and_returns_processing(api_client, session_maker):
    with patch("services.credits.settings.SIGNUP_CREDITS", 3):
        response = await api_client.post("/generations", json=_payload(2), headers=OWNER_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processing"
    assert body["requested_image_count"] == 2
    assert body["poll_interval_ms"] > 0

    balance = await api_client.get("/billing/balance", headers=OWNER_HEADERS)
    assert balance.json()["credits"] == 1

    status = await api_client.get(f"/generations/{body['job_id']}", headers=OWNER_HEADERS)
    assert status.status_code == 200
    assert status.headers["cache-control"] == "no-store"
    assert status.json()["image_urls"] == []
    assert status.json()["placeholder_slots"] == []


@pytest.mark.asyncio
async def test_insufficient_credits_returns_402_and_creates_nothing(api_client, session_maker):
    with patch("services.credits.settings.SIGNUP_CREDITS", 1):
        response = await api_client.post("/generations", json=_payload(2), headers=OWNER_HEADERS)

    assert response.status_code == 402
    assert "Insufficient credits" in response.json()["detail"]

    listed = await api_client.get("/generations", headers=OWNER_HEADERS)
    assert listed.json() == []
    async with session_maker() as db:
        assert await get_balance(OWNER_ID, db) == 1
        assert len(await list_entries(OWNER_ID, db)) == 1


@pytest.mark.asyncio
async def test_concurrent_submits_cannot_both_spend_the_balance(api_client, session_maker):
    with patch("services.credits.settings.SIGNUP_CREDITS", 3):
        await api_client.get("/billing/balance", headers=OWNER_HEADERS)

    responses = await asyncio.gather(
        api_client.post("/generations", json=_payload(2), headers=OWNER_HEADERS),
        api_client.post("/generations", json=_payload(2), headers=OWNER_HEADERS),
    )

    assert sorted(response.status_code for response in responses) == [200, 402]
    async with session_maker() as db:
        assert await get_balance(OWNER_ID, db) == 1
    listed = await api_client.get("/generations", headers=OWNER_HEADERS)
    assert len(listed.json()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"image_count": 0},
        {"image_count": 9},
        {"prompt": "   "},
        {"aspect_ratio": "panorama"},
        {"original_url": "not-a-url"},
        {"lighting": "Neon"},
    ],
)
async def test_invalid_requests_are_rejected_without_charge(api_client, session_maker, overrides):
    response = await api_client.post("/generations", json=_payload(**overrides), headers=OWNER_HEADERS)

    assert response.status_code == 422
    async with session_maker() as db:
        entries = await list_entries(OWNER_ID, db)
    assert all(entry.kind != "generation" for entry in entries)


@pytest.mark.asyncio
async def test_queue_outage_returns_503_with_refund(api_client, session_maker):
    def _broken_enqueue(job_id):
        raise ConnectionError("redis is down")

    with (
        patch("services.credits.settings.SIGNUP_CREDITS", 4),
        patch("services.generation.enqueue_generation_job", _broken_enqueue),
    ):
        response = await api_client.post("/generations", json=_payload(3), headers=OWNER_HEADERS)

    assert response.status_code == 503
    assert "refunded" in response.json()["detail"]
    listed = (await api_client.get("/generations", headers=OWNER_HEADERS)).json()
    assert [job["status"] for job in listed] == ["failed"]
    async with session_maker() as db:
        assert await get_balance(OWNER_ID, db) == 4


@pytest.mark.asyncio
async def test_generation_is_only_visible_to_its_owner(api_client):
    created = await api_client.post("/generations", json=_payload(1), headers=OWNER_HEADERS)
    job_id = created.json()["job_id"]

    foreign = await api_client.get(f"/generations/{job_id}", headers=OTHER_HEADERS)
    missing = await api_client.get("/generations/does-not-exist", headers=OWNER_HEADERS)

    assert foreign.status_code == 404
    assert missing.status_code == 404
    assert (await api_client.get("/generations", headers=OTHER_HEADERS)).json() == []


@pytest.mark.asyncio
async def test_history_lists_newest_first(api_client):
    first = (await api_client.post("/generations", json=_payload(1), headers=OWNER_HEADERS)).json()
    second = (await api_client.post("/generations", json=_payload(1), headers=OWNER_HEADERS)).json()

    listed = await api_client.get("/generations", headers=OWNER_HEADERS)

    assert [job["job_id"] for job in listed.json()] == [second["job_id"], first["job_id"]]


@pytest.mark.asyncio
async def test_requests_without_session_token_are_rejected(api_client):
    response = await api_client.post("/generations", json=_payload(1))
    assert response.status_code == 401

    bad = await api_client.get("/generations", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


@pytest.mark.asyncio
async def test_polling_reports_completed_job_with_placeholder_slots(api_client):
    async def _reference(original_url, **kwargs):
        return ReferenceImage(data=b"\xff\xd8\xff" + b"\x00" * 8, mime_type="image/jpeg")

    async def _synthesize(reference, slot, **kwargs):
        if slot.slot_index == 0:
            raise RuntimeError("provider timeout")
        return PNG_BYTES

    async def _publish(key, data, mime_type="image/png"):
        return f"https://cdn.test/{key}"

    with (
        patch("services.generation.settings.GENERATION_DISPATCH_MODE", "inline"),
        patch("services.generation.settings.PLACEHOLDER_IMAGE_URL", "https://placehold.test/x.png"),
        patch("services.generation.load_reference_image", _reference),
        patch("services.generation.synthesize_image", _synthesize),
        patch("services.generation.publish_image", _publish),
    ):
        created = await api_client.post("/generations", json=_payload(2), headers=OWNER_HEADERS)
        await drain_inline_tasks()
        status = await api_client.get(f"/generations/{created.json()['job_id']}", headers=OWNER_HEADERS)

    body = status.json()
    assert body["status"] == "completed"
    assert body["placeholder_slots"] == [0]
    assert body["image_urls"][0] == "https://placehold.test/x.png"
    assert body["image_urls"][1].endswith("image-2.png")
    assert body["completed_at"] is not None


@pytest.mark.asyncio
async def test_catalog_lists_generation_options(api_client):
    response = await api_client.get("/catalog")

    assert response.status_code == 200
    body = response.json()
    assert "Editorial" in body["styles"]
    assert body["aspect_ratios"] == ["portrait", "landscape", "square"]
    assert body["max_images"] == 8
    assert body["credit_cost_per_image"] >= 1


@pytest.mark.asyncio
async def test_liveness_endpoint(api_client):
    response = await api_client.get("/health/live")
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_owner_can_toggle_favorite_and_others_cannot(api_client):
    created = await api_client.post("/generations", json=_payload(1), headers=OWNER_HEADERS)
    job_id = created.json()["job_id"]

    starred = await api_client.post(f"/generations/{job_id}/favorite", headers=OWNER_HEADERS)
    foreign = await api_client.post(f"/generations/{job_id}/favorite", headers=OTHER_HEADERS)
    status = await api_client.get(f"/generations/{job_id}", headers=OWNER_HEADERS)
    unstarred = await api_client.post(f"/generations/{job_id}/favorite", headers=OWNER_HEADERS)

    assert starred.json() == {"job_id": job_id, "is_favorite": True}
    assert foreign.status_code == 404
    assert status.json()["is_favorite"] is True
    assert unstarred.json()["is_favorite"] is False
    missing = await api_client.post("/generations/does-not-exist/favorite", headers=OWNER_HEADERS)
    assert missing.status_code == 404
