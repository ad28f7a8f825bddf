"""Generation option catalog for client pickers."""

from fastapi import APIRouter

from config import settings
from services.prompt_catalog import catalog_payload

router = APIRouter()


@router.get("")
async def get_catalog():
    payload = catalog_payload()
    payload["credit_cost_per_image"] = max(int(settings.CREDIT_COST_PER_IMAGE), 1)
    payload["poll_interval_ms"] = int(settings.GENERATION_POLL_INTERVAL_MS)
    return payload
